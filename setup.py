"""
Setup file.
"""

from setuptools import setup

URL = "https://github.com/zackees/managed-process"
KEYWORDS = "subprocess process lifecycle timeout kill tree"


if __name__ == "__main__":
    setup(
        maintainer="Zachary Vorhies",
        keywords=KEYWORDS,
        url=URL,
    )
