from setuptools import find_packages, setup

setup(
    name="fleet-rental",
    version="1.0.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110.0",
        "uvicorn>=0.27.0",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "python-multipart>=0.0.9",
        "sqlalchemy>=2.0.0",
        "psycopg2-binary>=2.9.0",
        "loguru>=0.7.0",
        "python-dotenv>=1.0.0",
        "requests>=2.31.0",
        "urllib3>=2.0.0",
        "cachetools>=5.3.0",
        "pybreaker>=1.0.0",
        "prometheus-client>=0.19.0",
        "prometheus-fastapi-instrumentator>=6.1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "httpx>=0.26.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "fleet-rental=fleet_rental.main:main",
        ],
    },
)
