from setuptools import setup, find_packages

setup(
    name="feedsync",
    version="0.1.0",
    description="Real-time optimistic chat feed synchronization",
    packages=find_packages(include=["feedsync", "feedsync.*"]),
    install_requires=[
        "python-socketio",
        "aiohttp",
        "python-dotenv",
        "pydantic>=2",
        "pydantic-settings>=2",
        "opentelemetry-api",
        "opentelemetry-sdk",
        "opentelemetry-exporter-otlp-proto-http",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "pytest-mock",
        ],
    },
    entry_points={
        "console_scripts": [
            "feedsync=feedsync.__main__:main",
        ],
    },
    python_requires=">=3.8",
)
