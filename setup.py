from setuptools import setup, find_namespace_packages

CORE_DEPS = [
    "requests",
    "python-dotenv",
    "colorama",
    "fastapi",
    "uvicorn[standard]",
    "cryptography",
    "websockets>=13",
    "aiortc",
]

TEST_DEPS = [
    "pytest",
    "httpx",
]

setup(
    name="peerdrop",
    version="0.1.0",
    packages=find_namespace_packages(include=["peerdrop", "peerdrop.*"]),
    python_requires=">=3.10",
    install_requires=CORE_DEPS,
    extras_require={
        "test": TEST_DEPS,
    },
    entry_points={
        "console_scripts": [
            "peerdrop=peerdrop.main:main",
        ],
    },
)
