from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="cloud_dzip",
    version="0.1.0",
    description="read Deep Zoom tiles and stored ZIP entries from remote archives using only HTTP range requests",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        'fsspec',
        'aiohttp',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    python_requires=">=3.9",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    entry_points={
        'console_scripts': [
            'cloud_dzip=cloud_dzip.core:main',
        ],
    },
)
