"""
Triskell Bridge setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="triskell-bridge",
    version="1.0.0",
    description="Triskell Bridge — webhook relay and scheduled sync service for the Triskell API",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "triskell-bridge=triskell_bridge.cli:main",
        ],
    },
    install_requires=[
        "pydantic>=2.5",
        "pyyaml>=6.0",
        "httpx>=0.27",
        "fastapi>=0.110",
        "uvicorn>=0.29",
        "croniter>=2.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
)
