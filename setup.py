import os

import setuptools


def read_file(name):
    with open(os.path.join(os.path.dirname(__file__), name)) as fp:
        return fp.read()


setuptools.setup(
    name="modarc",
    version="0.1.0",
    license="COIL",
    description="A trio simulation of group chats under centralized, threshold-based moderation.",
    long_description=read_file("description.md"),
    long_description_content_type="text/markdown",
    keywords="chat moderation simulation async trio",
    python_requires=">=3.8",
    install_requires=read_file("requirements.txt").strip().split("\n"),
    extras_require={"test": ["pytest"]},
    packages=["modarc"],
    entry_points={"console_scripts": ["modarc = modarc.cli:main"]},
    classifiers=[
        "Framework :: Trio",
        "Topic :: Communications :: Chat",
        "Topic :: Software Development :: Testing",
    ],
)
