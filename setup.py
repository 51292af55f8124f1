from setuptools import setup, find_packages

setup(
    name="vertex_reco",
    version="0.1.0",
    description="3D vertex finding and track joining on a tree-shaped track graph",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(include=["vertex_reco", "vertex_reco.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Runtime dependencies
        "numpy",
        "numba",
        "pandas",
        "matplotlib",
        "scipy",
        "networkx",
        "orjson",
    ],
    extras_require={
        # Developer extras
        "dev": [
            "pytest",
            "black",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            # CLI entry point for running main.py
            "vertex-reco=vertex_reco.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
