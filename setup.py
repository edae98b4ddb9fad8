from setuptools import setup, find_packages

setup(
    name="parley",
    version="0.1.0",
    description="Parley's protocol engine: handshake, heartbeat, disconnect and request/response over an untrusted channel",
    author="Remy Tuyeras",
    author_email="rtuyeras@summoner.org",
    packages=find_packages(include=["parley", "parley.*"]),
    python_requires=">=3.10",
    install_requires=[
        "aioconsole==0.8.1",
        "python-dotenv==1.1.0",
        "typing_extensions==4.15.0; python_version < '3.13'",
    ],
    extras_require={
        "dev": [
            "pytest>=8.3.0",
            "pytest-asyncio>=0.23",
            "black",
            "ruff",
        ]
    },
    include_package_data=True,
    zip_safe=False,
)
