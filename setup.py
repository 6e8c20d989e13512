import setuptools
import os
import re

with open("README.md", "r") as fh:
    long_description = fh.read()

here = os.path.abspath(os.path.dirname(__file__))

def read(*parts):
    with open(os.path.join(here, *parts), 'r') as fp:
        return fp.read()

def find_version(*file_paths):
    version_file = read(*file_paths)
    version_match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]",
                              version_file, re.M)
    if version_match:
        return version_match.group(1)
    raise RuntimeError("Unable to find version string.")

setuptools.setup(
    name="git-pr",
    version=find_version("gitpr", "__init__.py"),
    description="Submit and land stacks of dependent pull requests on GitHub",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=("gitpr", "gitpr.*")),
    include_package_data=True,
    package_data={
        'gitpr': ['py.typed'],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires='>=3.8',
    install_requires=[
        'aiohttp',
        'click',
        'PyYAML',
        'requests',
        'typing_extensions>=3.7.2',  # need Literal
    ],
    extras_require={
        'test': [
            'expecttest',
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'git-pr = gitpr.cli:main',
        ]
    },
)
