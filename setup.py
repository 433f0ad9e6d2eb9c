# setup.py
from setuptools import setup, find_packages

setup(
    name="wp_vrt",
    version="0.1.0",
    description="Visual regression testing pipeline for WordPress sites",
    packages=find_packages(include=["wp_vrt", "wp_vrt.*"]),
    install_requires=[
        "aiohttp>=3.9",
        "beautifulsoup4>=4.12",
        "pydantic>=2.5",
        "PyYAML>=6.0",
        "click>=8.1",
        "Jinja2>=3.1",
        "playwright>=1.40",
        "Pillow>=10.0",
        "numpy>=1.24",
        "psutil>=5.9",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "wp-vrt=wp_vrt.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
