from setuptools import find_packages, setup

setup(
    name="lscov",
    version="0.0",
    description="Covariance estimation for nonlinear least squares problems",
    url="http://github.com/brentyi/lscov",
    author="brentyi",
    author_email="brentyi@berkeley.edu",
    license="BSD",
    package_dir={"": "src"},
    packages=find_packages("src"),
    package_data={"lscov": ["py.typed"]},
    python_requires=">=3.11",
    install_requires=[
        "jax>=0.4.0",
        "jaxlib",
        "jaxlie>=1.3.0",
        "jax_dataclasses>=1.6.0",
        "numpy",
        "scipy>=1.11.0",
        "loguru",
    ],
    extras_require={
        "suitesparse": [
            "scikit-sparse",
        ],
        "testing": [
            "pytest",
            "pytest-cov",
        ],
        "type-checking": [
            "mypy",
        ],
    },
)
