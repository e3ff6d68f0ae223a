from setuptools import setup, find_namespace_packages

setup(
    name="slimpipe",
    version="0.1.0",
    packages=find_namespace_packages(where="src", include=["slimpipe", "slimpipe.*"]),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "psutil>=5.9",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
        "structlog>=23.1",
        "pyelftools>=0.29",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
        "dev": ["black>=23.0", "pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "slimpipe=slimpipe.CLI.main:main",
        ],
    },
)
