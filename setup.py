"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="webai-chat",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "fastapi",
        "httpx",
        "opentelemetry-instrumentation-fastapi",
        "prometheus-client",
        "pydantic>=2",
        "python-dotenv",
        "structlog",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
)
