from setuptools import setup, find_packages

setup(
    name="workflow-runtime",
    version="0.1.0",
    description="Interpreter for declarative agent workflow documents",
    author="Workflow Runtime Team",
    packages=find_packages(exclude=["*.tests", "*.tests.*"]),
    package_data={
        "workflow_tools": ["templates/*.yaml", "templates/*.tmpl"],
    },
    include_package_data=True,
    install_requires=[
        "pydantic>=2.0.0",
        "psutil>=5.9.0",
        "pyyaml>=6.0",
        "requests>=2.28.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.0.0",
        ],
    },
    python_requires=">=3.9",
)
