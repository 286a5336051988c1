from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fp:
    long_description = fp.read()

setup(
    name="provisionmc",
    version="1.0.0",
    description="ProvisionMC is a module that provides both an API and a CLI ensuring that a Minecraft client, "
                "its Java runtime and an optional Fabric or Quilt loader are installed and ready to run.",
    author="ProvisionMC contributors",
    packages=["provisionmc", "provisionmc.cli"],
    python_requires=">=3.8",
    install_requires=[
        "httpx",
        "aiofiles",
        "nbtlib>=2.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": ["provisionmc=provisionmc.cli:main"],
    },
    url="https://github.com/provisionmc/provisionmc",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="GPL-3.0",
)
