"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="inbox-sync",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.0",
        "pydantic-settings",
        "structlog",
        "httpx",
        "aiohttp",
        "fastapi",
        "prometheus-client",
        "opentelemetry-instrumentation-fastapi",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "tzdata",
        ],
    },
)
