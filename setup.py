"""Setup configuration for backupctl."""

from setuptools import setup, find_packages

setup(
    name="backupctl",
    version="1.0.0",
    description="Backup orchestration engine: scheduled, verified and retained backups",
    author="Your Name",
    packages=find_packages(include=["backupctl", "backupctl.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "APScheduler>=3.10,<4",
        "cryptography>=41.0",
        "requests>=2.31",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "backupctl=backupctl.cli:main",
        ],
    },
    python_requires=">=3.8",
)
