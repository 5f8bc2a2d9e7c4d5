#+
# Tests of EventLoopBridge against a minimal engine connection.
#-

import os
import asyncio
import pytest
from dbuswire import \
    DBUS
from switchyard import \
    EventLoopBridge
from fakebus import \
    wait_until, \
    settle

class StubWatch :

    def __init__(self, fd, enabled = True, on_handle = None) :
        self.fd = fd
        self.flags = DBUS.WATCH_READABLE
        self.enabled = enabled
        self.handled = 0
        self.on_handle = on_handle
    #end __init__

    def fileno(self) :
        return \
            self.fd
    #end fileno

    def handle(self, flags) :
        self.handled += 1
        try :
            os.read(self.fd, 4096)
        except BlockingIOError :
            pass
        #end try
        if self.on_handle != None :
            self.on_handle()
        #end if
        return \
            True
    #end handle

#end StubWatch

class StubTimeout :

    def __init__(self, interval, on_handle = None) :
        self.interval = interval
        self.enabled = True
        self.fired = 0
        self.on_handle = on_handle
    #end __init__

    def handle(self) :
        self.fired += 1
        if self.on_handle != None :
            self.on_handle()
        #end if
        return \
            True
    #end handle

#end StubTimeout

class StubConnection :
    "just enough of an engine connection to attach an EventLoopBridge to."

    def __init__(self) :
        self.queue = []
        self.dispatched = []
        self.watch_functions = None
        self.timeout_functions = None
    #end __init__

    def set_watch_functions(self, add_function, remove_function, toggled_function, data) :
        self.watch_functions = (add_function, remove_function, toggled_function)
    #end set_watch_functions

    def set_timeout_functions(self, add_function, remove_function, toggled_function, data) :
        self.timeout_functions = (add_function, remove_function, toggled_function)
    #end set_timeout_functions

    @property
    def dispatch_status(self) :
        return \
            (DBUS.DISPATCH_COMPLETE, DBUS.DISPATCH_DATA_REMAINS)[len(self.queue) != 0]
    #end dispatch_status

    def dispatch(self) :
        self.dispatched.append(self.queue.pop(0))
        return \
            self.dispatch_status
    #end dispatch

    def add_watch(self, watch) :
        return \
            self.watch_functions[0](watch, None)
    #end add_watch

    def remove_watch(self, watch) :
        self.watch_functions[1](watch, None)
    #end remove_watch

    def toggle_watch(self, watch) :
        self.watch_functions[2](watch, None)
    #end toggle_watch

    def add_timeout(self, timeout) :
        return \
            self.timeout_functions[0](timeout, None)
    #end add_timeout

    def remove_timeout(self, timeout) :
        self.timeout_functions[1](timeout, None)
    #end remove_timeout

    def toggle_timeout(self, timeout) :
        self.timeout_functions[2](timeout, None)
    #end toggle_timeout

#end StubConnection

@pytest.fixture
def pipe() :
    rfd, wfd = os.pipe()
    os.set_blocking(rfd, False)
    yield rfd, wfd
    os.close(rfd)
    os.close(wfd)
#end pipe

def attached() :
    conn = StubConnection()
    bridge = EventLoopBridge(conn, asyncio.get_running_loop())
    bridge.attach()
    return \
        conn, bridge
#end attached

@pytest.mark.asyncio
async def test_one_readiness_event_drains_every_message(pipe) :
    rfd, wfd = pipe
    conn, bridge = attached()
    watch = StubWatch(rfd)
    assert conn.add_watch(watch)
    conn.queue.extend(["first", "second", "third"])
    os.write(wfd, b".")
    await wait_until(lambda : watch.handled != 0)
    assert conn.dispatched == ["first", "second", "third"]
    assert watch.handled == 1
    bridge.detach()
#end test_one_readiness_event_drains_every_message

@pytest.mark.asyncio
async def test_toggle_is_idempotent(pipe) :
    rfd, wfd = pipe
    loop = asyncio.get_running_loop()
    conn, bridge = attached()
    watch = StubWatch(rfd, enabled = False)
    conn.add_watch(watch)
    conn.toggle_watch(watch) # still disabled
    conn.toggle_watch(watch)
    os.write(wfd, b".")
    await settle()
    assert watch.handled == 0
    watch.enabled = True
    conn.toggle_watch(watch)
    conn.toggle_watch(watch) # resuming twice registers once
    await wait_until(lambda : watch.handled != 0)
    watch.enabled = False
    conn.toggle_watch(watch)
    assert not loop.remove_reader(rfd)
    bridge.detach()
#end test_toggle_is_idempotent

@pytest.mark.asyncio
async def test_toggle_of_unknown_watch_is_ignored(pipe) :
    rfd, wfd = pipe
    conn, bridge = attached()
    conn.toggle_watch(StubWatch(rfd))
    assert bridge.watch_count == 0
    assert not asyncio.get_running_loop().remove_reader(rfd)
    bridge.detach()
#end test_toggle_of_unknown_watch_is_ignored

@pytest.mark.asyncio
async def test_watch_removed_from_own_callback(pipe) :
    rfd, wfd = pipe
    conn, bridge = attached()
    watch = StubWatch(rfd)
    watch.on_handle = lambda : conn.remove_watch(watch)
    conn.add_watch(watch)
    conn.queue.append("only")
    os.write(wfd, b".")
    await wait_until(lambda : watch.handled != 0)
    assert bridge.watch_count == 0
    assert conn.dispatched == ["only"]
    os.write(wfd, b".")
    await settle()
    assert watch.handled == 1
    bridge.detach()
#end test_watch_removed_from_own_callback

@pytest.mark.asyncio
async def test_timer_repeats() :
    conn, bridge = attached()
    timeout = StubTimeout(0.01)
    conn.add_timeout(timeout)
    await wait_until(lambda : timeout.fired >= 3)
    bridge.detach()
    fired = timeout.fired
    await asyncio.sleep(0.05)
    assert timeout.fired == fired
#end test_timer_repeats

@pytest.mark.asyncio
async def test_timer_firing_drains() :
    conn, bridge = attached()
    timeout = StubTimeout(0.01)
    timeout.on_handle = lambda : conn.queue.extend(["a", "b"])
    conn.add_timeout(timeout)
    await wait_until(lambda : timeout.fired != 0)
    assert conn.dispatched[:2] == ["a", "b"]
    bridge.detach()
#end test_timer_firing_drains

@pytest.mark.asyncio
async def test_timeout_removed_from_own_callback() :
    conn, bridge = attached()
    timeout = StubTimeout(0.01)
    timeout.on_handle = lambda : conn.remove_timeout(timeout)
    conn.add_timeout(timeout)
    await wait_until(lambda : timeout.fired != 0)
    await asyncio.sleep(0.05)
    assert timeout.fired == 1
    assert bridge.timer_count == 0
    bridge.detach()
#end test_timeout_removed_from_own_callback

@pytest.mark.asyncio
async def test_disabled_timeout_does_not_fire() :
    conn, bridge = attached()
    timeout = StubTimeout(0.01)
    timeout.enabled = False
    conn.add_timeout(timeout)
    await asyncio.sleep(0.05)
    assert timeout.fired == 0
    timeout.enabled = True
    conn.toggle_timeout(timeout)
    await wait_until(lambda : timeout.fired != 0)
    bridge.detach()
#end test_disabled_timeout_does_not_fire

@pytest.mark.asyncio
async def test_detach_forgets_everything(pipe) :
    rfd, wfd = pipe
    conn, bridge = attached()
    conn.add_watch(StubWatch(rfd))
    conn.add_timeout(StubTimeout(10))
    bridge.detach()
    assert bridge.watch_count == 0
    assert bridge.timer_count == 0
    assert conn.watch_functions == (None, None, None)
    assert not asyncio.get_running_loop().remove_reader(rfd)
#end test_detach_forgets_everything

@pytest.mark.asyncio
async def test_halt_stops_draining() :
    conn, bridge = attached()
    conn.queue.extend(["a", "b"])
    bridge.halt()
    assert bridge.drain() == 0
    assert conn.dispatched == []
#end test_halt_stops_draining
