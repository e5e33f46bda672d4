"""Setup script for browser_agent package."""

from setuptools import setup, find_packages

setup(
    name="browser-agent",
    version="0.1.0",
    description="Autonomous browser agent engine with routed LLM profiles and capability providers",
    packages=find_packages(include=["browser_agent", "browser_agent.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
        "httpx>=0.25.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "browser-agent=browser_agent.main:main",
        ],
    },
    package_data={
        "browser_agent": ["config/default_config.yaml"],
    },
)
