"""Setup script for codex_agent package."""

from setuptools import setup, find_packages

setup(
    name="codex-agent",
    version="0.1.0",
    description="Terminal coding agent: streamed tool calls, safe dispatch and retries",
    packages=find_packages(include=["codex_agent", "codex_agent.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
        "httpx>=0.25.0",
        "pathspec>=0.11",
        "beautifulsoup4>=4.12",
    ],
    extras_require={
        "openai": ["openai>=1.0"],
        "anthropic": ["anthropic>=0.25"],
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
        "all": [
            "openai>=1.0",
            "anthropic>=0.25",
        ],
    },
    entry_points={
        "console_scripts": [
            "codex-agent=codex_agent.main:main",
        ],
    },
    package_data={
        "codex_agent": ["config/default_config.yaml"],
    },
)
