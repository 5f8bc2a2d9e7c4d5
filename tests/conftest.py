#+
# Copyright 2026 the DBusWire authors.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import logging
import pytest
import pytest_asyncio
import switchyard
from fakebus import \
    FakeBus

@pytest.fixture
def bus() :
    return \
        FakeBus()
#end bus

def _open(bus) :
    return \
        switchyard.Connection.open(switchyard.BUS.SESSION, engine = bus)
#end _open

@pytest_asyncio.fixture
async def conn(bus) :
    result = _open(bus)
    yield result
    result.close()
#end conn

@pytest_asyncio.fixture
async def peer(bus) :
    "a second connection to the same bus."
    result = _open(bus)
    yield result
    result.close()
#end peer

@pytest.fixture(autouse = True)
def debug_logging(caplog) :
    caplog.set_level(logging.DEBUG, logger = "switchyard")
#end debug_logging
