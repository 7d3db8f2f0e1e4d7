"""
batchgate - Execution Concurrency & Rate-Limiting Controller

This setup.py file is provided for pip install compatibility.
"""

from setuptools import find_packages, setup

if __name__ == "__main__":
    setup(
        name="batchgate",
        version="0.1.0",
        description="Concurrency and rate-limit controller for batch jobs against quota-limited generation APIs.",
        long_description=open("README.md").read(),
        long_description_content_type="text/markdown",
        package_dir={"": "src"},
        packages=find_packages("src"),
        python_requires=">=3.11",
        install_requires=[
            "pydantic>=2.0",
            "PyYAML>=6.0",
            "tenacity>=8.2",
            "prometheus-client>=0.17",
            "httpx>=0.25",
            "SQLAlchemy>=2.0",
        ],
        extras_require={
            "test": [
                "pytest>=7.4",
            ],
        },
        classifiers=[
            "Development Status :: 4 - Beta",
            "Intended Audience :: Developers",
            "License :: OSI Approved :: Apache Software License",
            "Programming Language :: Python :: 3",
            "Programming Language :: Python :: 3.11",
            "Programming Language :: Python :: 3.12",
            "Topic :: System :: Distributed Computing",
        ],
    )
