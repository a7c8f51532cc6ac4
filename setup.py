from setuptools import setup, find_packages

setup(
    name="fe_gcv",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy>=1.20.0",
        "scipy>=1.6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=6.0",
            "pytest-cov>=2.10",
            "black>=21.0",
            "flake8>=3.8",
        ],
    },
    python_requires=">=3.8",
    description="GCV smoothing parameter selection for finite element spatial regression",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
)
