from pathlib import Path
from setuptools import setup, find_packages


def read_readme() -> str:
    readme_path = Path(__file__).resolve().parent / "README.md"
    return readme_path.read_text(encoding="utf-8") if readme_path.exists() else ""


setup(
    name="enctools",
    version="1.0.0",
    packages=find_packages(include=["enctools", "enctools.*"]),
    install_requires=[
        "cryptography>=43.0.0",
        "numpy>=1.24.0",
        "colorama>=0.4.6",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "enctools=enctools.cli:main",
        ],
    },
    python_requires=">=3.10",
    description="Password-based streaming file encryption in a self-describing container",
    long_description=read_readme(),
    long_description_content_type="text/markdown",
)
