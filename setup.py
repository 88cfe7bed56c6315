"""Setup script for the telemetry pipeline."""

from setuptools import setup, find_packages

setup(
    name="telemetry_pipeline",
    version="0.1.0",
    description="Logging, tracing and metrics bootstrap for FastAPI services with span filtering",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.9",
    packages=find_packages(include=["telemetry_pipeline", "telemetry_pipeline.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0,<9",
            "httpx>=0.25.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest>=7.4.0,<9",
            "pytest-cov>=4.1.0",
            "httpx>=0.25.0",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: System :: Monitoring",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
