from setuptools import setup, find_packages

setup(
    name="toolwire",
    version="0.1.0",
    description="Connects to MCP servers over stdio, HTTP, SSE and WebSocket and routes tool calls to them.",
    packages=find_packages(where=".", include=["toolwire", "toolwire.*"]),
    package_dir={"": "."},
    package_data={"toolwire": ["config/*.json"]},
    include_package_data=True,
    install_requires=[
        "aiohttp>=3.9",
        "aiohttp-sse-client>=0.2.1",
        "websockets>=14.0",
        "colorama",
        "python-dotenv",
        "rich",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "toolwire=toolwire.__main__:main",
        ],
    },
    python_requires=">=3.10",
    classifiers=[
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
