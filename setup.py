from setuptools import setup, find_packages

setup(
    name="novel-forge",
    version="0.2.0",
    packages=find_packages(include=["novel_forge", "novel_forge.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.3",
        "pyyaml>=6.0.1",
        "rich>=13.7.0",
        "loguru>=0.7.2",
        "google-genai>=1.0.0",
        "openai>=1.40.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "novel-forge=novel_forge.cli:main",
        ],
    },
    python_requires=">=3.10",
)
