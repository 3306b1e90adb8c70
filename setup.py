from setuptools import setup, find_packages

setup(
    name="chatguard",
    version="0.1.0",
    packages=find_packages(include=["chatguard", "chatguard.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "pydantic>=2.5",
        "pydantic-settings>=2.7",
        "httpx>=0.26",
        "sqlalchemy[asyncio]>=2.0",
        "asyncpg>=0.29",
        "redis>=5.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "respx>=0.21",
            "aiosqlite>=0.19",
        ],
    },
)
