from setuptools import setup, find_packages

# Read README for long description
with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

# Minimal core dependencies - always installed
core_requirements = [
    # Core utilities
    "python-dotenv>=1.0.0",
    "httpx>=0.25.0",
    "pydantic>=2.0.0",
    "tenacity>=8.2.0",

    # Scheduling
    "croniter>=2.0.0",

    # LLM Providers (must have for agents to work)
    "anthropic>=0.18.0",
    "openai>=1.0.0",
    "groq>=0.4.0",
]

setup(
    name="orbit-agents",
    version="0.1.0",
    author="Thien Nguyen",
    description="Autonomous agent automation core: decision loop, triggers, delegation and scheduling",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Application Frameworks",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=core_requirements,
    extras_require={
        # Durable job queue
        "database": [
            "redis>=5.0.1",
        ],

        # Monitoring
        "monitoring": [
            "prometheus-client>=0.19.0",
        ],

        # Development tools
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
            "mypy>=1.0.0",
        ],

        # Install everything
        "all": [
            "redis>=5.0.1",
            "prometheus-client>=0.19.0",
        ],
    },
    keywords="ai agents llm automation triggers scheduling delegation agentic-ai",
)
