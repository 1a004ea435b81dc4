#!/usr/bin/env python3
"""
Setup script for ERC20 Balance Watch
"""

from setuptools import setup

setup(
    name="erc20-balance-watch",
    version="1.0.0",
    description="ERC20 balance threshold monitor with DingTalk alerts",
    package_dir={"": "src"},
    py_modules=[
        "alert_dispatcher",
        "amount_formatter",
        "balance_monitor",
        "config_manager",
        "erc20_codec",
        "ledger_reader",
        "logger_utils",
        "rpc_failover",
    ],
    install_requires=[
        "web3>=6.0.0,<7.0.0",
        "requests>=2.28.0",
        "eth-abi>=4.0.0,<5.0.0",
        "eth-utils>=2.0.0,<5.0.0",
        "eth-typing>=3.0.0,<5.0.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "balancewatch=balance_monitor:main",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
