# Copyright (C) 2022-2025, Pyronear.

# This program is licensed under the Apache License 2.0.
# See LICENSE or go to <https://opensource.org/licenses/Apache-2.0> for full license details.


import os
from pathlib import Path
from setuptools import setup

PKG_NAME = "bouncer"
VERSION = os.getenv("BUILD_VERSION", "0.1.0.dev0")


if __name__ == "__main__":
    print(f"Building wheel {PKG_NAME}-{VERSION}")

    cwd = Path(__file__).parent.absolute()
    pkg_dir = cwd.joinpath(PKG_NAME)

    with open(pkg_dir.joinpath("version.py"), "w", encoding="utf-8") as f:
        f.write(f"__version__ = '{VERSION}'\n")

    setup(
        name=PKG_NAME,
        version=VERSION,
        description="Network connectivity watchdog that power-cycles a router through a relay",
        packages=[PKG_NAME],
        python_requires=">=3.8",
        install_requires=[
            "requests>=2.31",
            "urllib3>=2.0",
            "python-dotenv>=1.0",
            "PyYAML>=6.0",
        ],
        extras_require={
            "gpio": ["RPi.GPIO>=0.7"],
            "test": ["pytest>=7.0"],
        },
    )
