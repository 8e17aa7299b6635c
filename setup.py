from setuptools import setup, find_packages

setup(
    name="LMMPower",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "numpy",
        "pandas",
        "scipy",
        "statsmodels>=0.14",
    ],
    extras_require={
        "parallel": ["joblib"],
        "progress": ["tqdm"],
        "test": ["pytest", "joblib", "tqdm"],
    },
    author="Paweł Lenartowicz",
    description="Simulation-based power analysis for mixed-effects designs",
)
