"""
Setup configuration for the Multi-Track Incremental Estimator.
"""

from setuptools import setup, find_namespace_packages

setup(
    name="multi-track-estimator",
    version="0.1.0",
    description="Incremental pose-graph estimation shared by multiple mapping workers",
    author="SLAM Sim Team",
    packages=find_namespace_packages(include=["src", "src.*", "tools"]),
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.24.0",
        "scipy>=1.10.0",
        "pydantic>=2.0.0",
        "pyyaml>=6.0",
        "typer>=0.9.0",
        "rich>=13.0.0",
        "gtsam>=4.2",
    ],
    extras_require={
        "dev": [
            "pytest>=7.3.0",
            "pytest-cov>=4.0.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "mypy>=1.3.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "multi-track=tools.cli:main",
        ],
    },
)
