import os
import time
from concurrent.futures import ThreadPoolExecutor

from pydantic import SecretStr

from slimpipe.MANAGERS.pipeline_orchestrator import PipelineOrchestrator
from slimpipe.MODELS.pipeline_config import TriggerEvent
from slimpipe.MODELS.pipeline_run import PipelineState
from slimpipe.MODELS.publish_target import RegistryCredential
from slimpipe.PARSERS.dockerfile_parser import DockerfileParser
from slimpipe.RUNNERS.dependency_resolver import DependencyResolver


def test_concurrent_runs_are_isolated(engine, make_config, elf_reader, tmp_path):
    """
    Runs 8 pipelines at once against the same engine; each run stages its
    files in its own directory and the registry keeps the last push.
    """
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    config = make_config()
    credential = RegistryCredential(username="ci-bot", token=SecretStr("s3cret"))

    def one_run(_):
        orchestrator = PipelineOrchestrator(config, engine=engine, work_dir=str(work_dir),
                                            resolver=DependencyResolver(reader=elf_reader()))
        return orchestrator.run(credential, TriggerEvent())

    start_time = time.time()
    with ThreadPoolExecutor(max_workers=4) as pool:
        runs = list(pool.map(one_run, range(8)))
    print(f"Ran 8 pipelines in {time.time() - start_time:.2f}s")

    assert all(run.state == PipelineState.DONE for run in runs), [r.error_message for r in runs]
    assert len({run.run_id for run in runs}) == 8
    assert os.listdir(work_dir) == []
    assert len(engine.pushed()) == 8
    assert "ghcr.io/owner/qbitun:latest" in engine.registry


def test_large_recipe_parsing():
    content = "FROM debian:bullseye-slim AS builder\n"
    for i in range(5000):
        content += f"RUN echo step_{i} && touch /tmp/step_{i}\n"
        content += f"ENV VAR_{i}=\"VALUE {i}\"\n"

    start_time = time.time()
    recipe = DockerfileParser().parse_from_string(content)
    end_time = time.time()

    assert len(recipe.final.instructions) == 10000
    assert end_time - start_time < 5.0
