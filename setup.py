#+
# Setuptools script to install DBusWire. Make sure setuptools
# <https://setuptools.pypa.io/en/latest/index.html> is installed.
# Invoke from the command line in this directory as follows:
#
#     python3 setup.py build
#     sudo python3 setup.py install
#
# or, for development, including the test requirements:
#
#     pip install -e .[test]
#
# Written by the DBusWire authors.
#-

import sys
import setuptools
from setuptools.command.build_py import \
    build_py as std_build_py

class my_build_py(std_build_py) :
    "customization of build to perform additional validation."

    def run(self) :
        try :
            exec \
              (
                "from __future__ import annotations\n"
                "async def dummy() :\n"
                "    pass\n"
                "#end dummy\n"
              )
        except SyntaxError :
            sys.stderr.write("This module requires Python 3.7 or later.\n")
            sys.exit(-1)
        #end try
        super().run()
    #end run

#end my_build_py

setuptools.setup \
  (
    name = "DBusWire",
    version = "0.1",
    description = "typed marshaling and asyncio dispatch core for D-Bus, on top of libdbus",
    long_description =
        "a typed value model and marshaler for D-Bus messages, and an asyncio-driven"
        " connection core that correlates replies, routes signals, tracks bus-name"
        " owners and dispatches method calls to exported objects; for Python 3.7 or later",
    author = "the DBusWire authors",
    license = "LGPL v2.1+",
    python_requires = ">=3.7",
    py_modules = ["dbuswire", "switchyard"],
    extras_require =
        {
            "test" : ["pytest", "pytest-asyncio"],
        },
    cmdclass =
        {
            "build_py" : my_build_py,
        },
  )
