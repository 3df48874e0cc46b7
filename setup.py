"""Setup script for the rlmenv package.

For development installation:
    pip install -e ".[test]"

For production installation:
    pip install .
"""

from setuptools import setup

# Read requirements from requirements.txt
with open("requirements.txt") as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

with open("README.md", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="rlmenv",
    version="0.1.0",
    description="Recursive Language Model execution scaffold for contexts beyond the model window",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=["rlmenv"],
    python_requires=">=3.11",
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=8.0", "python-dotenv>=1.0"],
    },
    entry_points={
        "console_scripts": ["rlmenv=rlmenv.cli:main"],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.13",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
)
