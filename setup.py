from setuptools import setup, find_packages


setup(
    name="carpack",
    version="0.1",
    packages=find_packages(include=["carpack", "carpack.*"]),
    description="Slice directories into CAR files with piece commitments and deal-ready catalogs.",
    install_requires=[
        "structlog>=23.1.0",
    ],
    entry_points={
        "console_scripts": [
            "carpack=carpack.cli:main",
        ]
    },
)
