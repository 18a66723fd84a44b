#!/usr/bin/env python

import os
import setuptools


# this sets __version__
# # via: http://stackoverflow.com/a/7071358/87207
# # and: http://stackoverflow.com/a/2073599/87207
with open(os.path.join("evtxdecode", "version.py"), "rb") as f:
     exec(f.read())

setuptools.setup(name="evtxdecode",
      version=__version__,
      description="evtxdecode parses Windows EVTX event log files and renders their BinXML records as XML or flattened text.",
      license="Apache 2.0 License",
      packages=setuptools.find_packages(exclude=["tests"]),
      entry_points={
          "console_scripts": [
              "evtxdecode=evtxdecode.main:main",
          ]
      },
      install_requires=[
          'lxml',
      ],
      extras_require={
          'test': [
              'pytest',
          ],
      },
)
