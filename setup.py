import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

with open('VERSION', 'r') as fh:
    VERSION = fh.read().strip()

setuptools.setup(
    name="isoinstall",
    version=VERSION,
    description="Disk provisioning and system extraction for Proxmox installation media",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: GNU Affero General Public License v3",
        "Operating System :: POSIX :: Linux",
    ],
    python_requires='>=3.12',
    install_requires=[
        "pyparted",
        "pydantic>=2",
    ],
    extras_require={
        "test": ["pytest"],
        "log": ["systemd-python"],
    },
    entry_points={
        "console_scripts": ["isoinstall=isoinstall:run_as_a_module"],
    },
)
