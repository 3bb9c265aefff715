"""Setup script for the CampaignFlow package."""

from setuptools import setup, find_namespace_packages

setup(
    name="campaignflow",
    version="0.1.0",
    packages=find_namespace_packages(include=["campaignflow", "campaignflow.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.2",
        "prometheus-client>=0.19",
        "tenacity>=8.2",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    description="CampaignFlow - handoff-gated workflow engine for email campaign pipelines",
    author="CampaignFlow Team",
)
