#!/usr/bin/env python3
"""
Setup script for the tutoring fulfillment workers

Packages live under backend/: the shared runtime plus one package per worker
(purchase_worker, allocation_worker, session_worker, cache_worker).
"""

from setuptools import setup, find_packages

setup(
    name="tutoring-fulfillment",
    version="0.1.0",
    package_dir={"": "backend"},
    packages=find_packages("backend", exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        # HTTP client (allocation service)
        "httpx>=0.25.2",

        # Data Validation & Settings
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "python-dotenv>=1.0.0",

        # Database & Caching
        "redis[hiredis]>=5.0.1",
        "asyncpg>=0.29.0",

        # Message Queue
        "confluent-kafka>=2.3.0",

        # Logging
        "python-json-logger>=3.1.0",

        # Observability
        "opentelemetry-api>=1.23.0",
        "prometheus-client>=0.19.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
)
