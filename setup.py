from setuptools import find_packages, setup


install_requires = (
    "aiohttp>=3.9.5",
    "yarl>=1.9.4",
    "aioitertools>=0.11.0",
    "trafaret>=2.1.1",
    "neuro-logging>=24.4.0",
    "sentry-sdk>=2.0.0",
    "iso8601>=2.1.0",
    "orjson>=3.10.0",
    "rich>=13.7.1",
)

extras_require = {
    "dev": [
        "pytest>=8.1.1",
        "pytest-asyncio>=0.23.6",
        "pytest-aiohttp>=1.0.5",
    ]
}

setup(
    name="platform-log-tail",
    version="1.0.0",
    url="https://github.com/neuro-inc/platform-log-tail",
    packages=find_packages(exclude=("tests", "tests.*")),
    install_requires=install_requires,
    extras_require=extras_require,
    python_requires=">=3.12",
    entry_points={
        "console_scripts": ["platform-log-tail=platform_log_tail.app:main"]
    },
    zip_safe=False,
)
