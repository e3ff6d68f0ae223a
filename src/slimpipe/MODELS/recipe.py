"""
Models for parsed multi-stage build recipes (Dockerfiles).
"""
from typing import List, Optional, Dict
from pydantic import BaseModel


class Instruction(BaseModel):
    """
    Represents a single instruction in a recipe.
    """
    instruction: str
    arguments: List[str]
    flags: Dict[str, str] = {}
    raw: str


class RecipeStage(BaseModel):
    """
    One ``FROM`` block of a multi-stage recipe.
    """
    index: int
    base: str
    name: Optional[str] = None
    instructions: List[Instruction] = []

    def find(self, instruction: str) -> List[Instruction]:
        return [i for i in self.instructions if i.instruction == instruction]

    def last(self, instruction: str) -> Optional[Instruction]:
        found = self.find(instruction)
        return found[-1] if found else None


class Recipe(BaseModel):
    """
    A complete recipe, split into its stages.
    """
    stages: List[RecipeStage] = []

    def stage(self, ref: str) -> Optional[RecipeStage]:
        """
        Looks a stage up by name or by index, as ``COPY --from`` does.
        """
        for stage in self.stages:
            if stage.name == ref:
                return stage
        if ref.isdigit() and int(ref) < len(self.stages):
            return self.stages[int(ref)]
        return None

    @property
    def final(self) -> Optional[RecipeStage]:
        return self.stages[-1] if self.stages else None
