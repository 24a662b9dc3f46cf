from setuptools import find_packages, setup


def read_requirements(path):
    with open(path) as f:
        return [line.strip() for line in f.read().splitlines() if line.strip() and not line.startswith("#")]


setup(
    name="resumable-provisioner",
    version="1.0.0",
    description="Resumable, checkpointed provisioning of destination environments",
    packages=find_packages(include=["provisioner", "provisioner.*"]),
    install_requires=read_requirements("requirements-core.txt"),
    extras_require={"test": read_requirements("requirements-test.txt")},
    python_requires=">=3.9",
    entry_points={
        "console_scripts": [
            "provisioner=provisioner.cli:main",
        ],
    },
)
