"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="resell-negotiation",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.0",
        "structlog",
        "fastapi",
        "google-generativeai",
        "google-api-core",
        "prometheus-client",
        "opentelemetry-instrumentation-fastapi",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
