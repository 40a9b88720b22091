"""Setup configuration for inkqueue."""

from setuptools import setup, find_packages

setup(
    name="inkqueue",
    version="1.0.0",
    description="Async generation job queue with API key rotation, retries and live updates",
    author="Your Name",
    packages=find_packages(include=["inkqueue", "inkqueue.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "sse-starlette>=2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "httpx>=0.27",
        ],
    },
    entry_points={
        "console_scripts": [
            "inkqueue=inkqueue.cli:cli",
        ],
    },
    python_requires=">=3.10",
)
