"""Setup script for the blob-ingestion package following Cosmic Python pattern."""

from setuptools import setup, find_namespace_packages

setup(
    name="blob-ingestion",
    version="1.0.0",
    description="Event-driven blob ingestion - copies newly uploaded blobs between containers, effectively once",
    author="Blob Ingestion Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src", include=["blob_ingestion*", "shared*"]),
    py_modules=["config"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic>=2",
        "redis",
        "minio",
        "urllib3",
        "requests",
        "tenacity",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "httpx",
            "fakeredis",
        ],
        "dev": [
            "black",
            "flake8",
            "mypy",
            "pre-commit",
        ],
    },
    entry_points={
        "console_scripts": [
            "blob-ingestion-webhook=blob_ingestion.entrypoints.webhook_api:main",
            "blob-ingestion-consumer=blob_ingestion.entrypoints.redis_eventconsumer:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.11",
        "Topic :: System :: Distributed Computing",
    ],
)
