from setuptools import setup, find_packages

setup(
    name="keygate",
    version="0.1.0",
    packages=find_packages(include=["keygate", "keygate.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "starlette>=0.36",
        "pydantic>=2.6",
        "pydantic-settings>=2.7",
        "uvicorn>=0.29",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
    entry_points={
        "console_scripts": [
            "keygate=keygate.app.main:run",
            "keygate-keys=keygate.app.cli:main",
        ],
    },
)
