from setuptools import setup, find_packages
from pathlib import Path

readme_path = Path(__file__).parent / "README.md"
if readme_path.exists():
    long_description = readme_path.read_text(encoding="utf-8")
else:
    long_description = "A cyclic state-graph execution engine with fork/join branches, checkpoints and lifecycle events."

setup(
    name="loopgraph",
    version="0.1.0",
    author="Fabricio Ceolin",
    author_email="fabceolin@gmail.com",
    description="A cyclic state-graph execution engine with fork/join branches, checkpoints and lifecycle events",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=[
        "networkx>=3.3",
        "pyyaml>=6.0",
        "jinja2>=3.0",  # Prompt templates for the graph templates module
        "jmespath>=1.0.0",  # Declarative edge conditions
        "jsonschema>=4.20.0",  # Checkpoint record validation
        "fsspec>=2023.1.0",  # Checkpoint files on local or remote filesystems
        "typer>=0.9.0",
    ],
    entry_points={
        "console_scripts": [
            "loopgraph=loopgraph.cli:main",
        ],
    },
    extras_require={
        "dev": [
            "pytest",
            "coverage",
            "hypothesis",
            "parameterized==0.9.0",
        ],
        "viz": ["pygraphviz>=1.13"],  # Graph images (requires libgraphviz-dev)
    },
)
