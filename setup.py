"""Setup configuration for prstats"""

from setuptools import setup, find_packages

setup(
    name="ado-pr-stats",
    version="0.1.0",
    description=(
        "Azure DevOps pull request statistics: cycle time, review latency, "
        "approval patterns, thread resolution and outliers."
    ),
    author="ADO PR Stats Contributors",
    author_email="",
    python_requires=">=3.10",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "black>=22.0",
            "flake8>=4.0",
            "mypy>=0.950",
        ],
    },
    entry_points={
        "console_scripts": [
            "prstats=prstats.main:main",
        ],
    },
)
