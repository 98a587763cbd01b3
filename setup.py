from setuptools import setup, find_packages

setup(
    name="tgsdaemon",
    version="0.1.0",
    description="Session manager for the typegen .tgs schema parser daemon",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "python-dotenv>=1.0.0",
        "rich>=13.0.0",
        "typer>=0.9.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "tgs-daemon=tgsdaemon.main:tgs_daemon",
        ],
    },
    python_requires=">=3.10",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
)
