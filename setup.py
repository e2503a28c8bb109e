from setuptools import find_packages, setup


setup(
    name="tensorc",
    version="0.1.0",
    description="Tensor DSL compiler: tensor IR -> affine loop nests -> low-level IR, with a reference backend",
    author="Relja",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
    ],
    extras_require={
        "dev": [
            "pytest>=7",
        ],
    },
    zip_safe=False,
)
