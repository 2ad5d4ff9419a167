from setuptools import setup, find_packages

setup(
    name="oneagent-operator",
    version="0.1.0",
    description="Kubernetes operator for managing OneAgent custom resources",
    author="Dynatrace",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.11",
    install_requires=[
        "kopf>=1.37.0",
        "kubernetes>=28.1.0,<37",
        "requests>=2.31.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pyyaml>=6.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "oneagent-operator=oneagent_operator.operator:main",
        ],
    },
)
