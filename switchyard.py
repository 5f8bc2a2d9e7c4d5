"""
High-level layer of DBusWire: event-driven connections to a D-Bus bus on
top of an asyncio event loop. Maps the bus engine's watch and timeout
callbacks onto the loop, correlates asynchronous replies with the calls
that produced them, keeps a cache of well-known-name owners fresh, routes
signals to interested proxies and dispatches incoming method calls to
exported objects.

Everything happens on the event loop the Connection was created with;
none of the objects here may be touched from any other thread.
"""
#+
# Copyright 2026 the DBusWire authors.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import enum
import asyncio
import logging
from weakref import \
    ref as weak_ref, \
    WeakSet
import dbuswire
from dbuswire import \
    DBUS, \
    DBusError, \
    CorruptMessage

logger = logging.getLogger(__name__)

#+
# Enumerations and result types
#-

class BUS(enum.Enum) :
    "the well-known buses that Connection.open can connect to."
    SESSION = DBUS.BUS_SESSION
    SYSTEM = DBUS.BUS_SYSTEM
#end BUS

class REQUEST_NAME(enum.Enum) :
    "possible outcomes of Connection.request_name:\n" \
    "  * PRIMARY_OWNER -- the caller now owns the name\n" \
    "  * IN_QUEUE -- the name is taken, the caller is queued for it\n" \
    "  * EXISTS -- the name is taken and the caller asked not to be queued\n" \
    "  * ALREADY_OWNER -- the caller already owned the name."
    PRIMARY_OWNER = DBUS.REQUEST_NAME_REPLY_PRIMARY_OWNER
    IN_QUEUE = DBUS.REQUEST_NAME_REPLY_IN_QUEUE
    EXISTS = DBUS.REQUEST_NAME_REPLY_EXISTS
    ALREADY_OWNER = DBUS.REQUEST_NAME_REPLY_ALREADY_OWNER
#end REQUEST_NAME

class RELEASE_NAME(enum.Enum) :
    "possible outcomes of Connection.release_name."
    RELEASED = DBUS.RELEASE_NAME_REPLY_RELEASED
    NON_EXISTENT = DBUS.RELEASE_NAME_REPLY_NON_EXISTENT
    NOT_OWNER = DBUS.RELEASE_NAME_REPLY_NOT_OWNER
#end RELEASE_NAME

class RESULT(enum.Enum) :
    "how a method call completed."
    SUCCESS = 1
    ERROR = 2
    TIMEOUT = 3
#end RESULT

_timeout_error_names = frozenset((DBUS.ERROR_NO_REPLY, DBUS.ERROR_TIMEOUT, DBUS.ERROR_TIMED_OUT))

class ConnectionFailed(DBusError) :
    "the bus could not be connected to."
#end ConnectionFailed

class ErrorReturn(Exception) :
    "Method handlers can raise this to report an error that will be returned" \
    " in a message back to the caller."

    def __init__(self, name, message = None) :
        self.args = (name, message)
    #end __init__

    @property
    def name(self) :
        return \
            self.args[0]
    #end name

    @property
    def message(self) :
        return \
            self.args[1]
    #end message

#end ErrorReturn

class CallResult :
    "the outcome of a method call, passed to its completion callback. status is" \
    " a RESULT value; values holds the returned WireValues on success, error_name" \
    " and error_message describe the failure otherwise."

    __slots__ = ("status", "values", "error_name", "error_message") # to forestall typos

    def __init__(self, status, values = (), error_name = None, error_message = None) :
        self.status = status
        self.values = list(values)
        self.error_name = error_name
        self.error_message = error_message
    #end __init__

    @classmethod
    def success(celf, values) :
        return \
            celf(RESULT.SUCCESS, values)
    #end success

    @classmethod
    def error(celf, name, message = None) :
        if name in _timeout_error_names :
            status = RESULT.TIMEOUT
        else :
            status = RESULT.ERROR
        #end if
        return \
            celf(status, (), name, message)
    #end error

    @property
    def ok(self) :
        return \
            self.status == RESULT.SUCCESS
    #end ok

    def unwrap(self) :
        "returns the returned values converted to native Python objects, or raises" \
        " DBusError if the call did not succeed."
        if not self.ok :
            raise DBusError(self.error_name, self.error_message)
        #end if
        return \
            list(v.unwrap() for v in self.values)
    #end unwrap

    def __repr__(self) :
        if self.ok :
            result = "CallResult(%s, %s)" % (self.status.name, repr(self.values))
        else :
            result = "CallResult(%s, %s, %s)" % (self.status.name, repr(self.error_name), repr(self.error_message))
        #end if
        return \
            result
    #end __repr__

#end CallResult

def _reply_result(reply) :
    # converts a reply Message (or None if there was none) to a CallResult.
    if reply == None :
        result = CallResult(RESULT.TIMEOUT, (), DBUS.ERROR_NO_REPLY, "no reply received")
    elif reply.type == DBUS.MESSAGE_TYPE_ERROR :
        args = dbuswire.decode_args(reply.iter_init())
        if len(args) != 0 and isinstance(args[0], dbuswire.String) :
            message = args[0].value
        else :
            message = None
        #end if
        result = CallResult.error(reply.error_name, message)
    else :
        result = CallResult.success(dbuswire.decode_args(reply.iter_init()))
    #end if
    return \
        result
#end _reply_result

def _name_reply(reply_codes, method, name, result) :
    # maps the CallResult of a RequestName or ReleaseName call to a member of
    # the reply_codes enum, or None if the call failed or the bus answered
    # with something unexpected.
    reply = None
    if result.ok :
        try :
            reply = reply_codes(result.values[0].as_int())
        except (IndexError, TypeError, ValueError) :
            logger.warning("%s %s: unexpected reply %s", method, name, repr(result.values))
        #end try
    else :
        logger.warning("%s %s failed: %s", method, name, result.error_name)
    #end if
    return \
        reply
#end _name_reply

def _invoke_callback(callback, *args) :
    # nothing raised by application code may unwind into the event loop.
    try :
        callback(*args)
    except Exception :
        logger.exception("callback %s raised exception", repr(callback))
    #end try
#end _invoke_callback

class Resolution :
    "the outcome of resolving a bus name to its current owner. owner is the unique" \
    " name of the owner, or None if the name currently has none or could not be" \
    " resolved. A name with no owner is a soft failure: ok is still True, and the" \
    " owner will be picked up when it appears."

    __slots__ = ("name", "owner", "error_name", "error_message") # to forestall typos

    def __init__(self, name, owner, error_name = None, error_message = None) :
        self.name = name
        self.owner = owner
        self.error_name = error_name
        self.error_message = error_message
    #end __init__

    @property
    def ok(self) :
        return \
            self.error_name in (None, DBUS.ERROR_NAME_HAS_NO_OWNER)
    #end ok

    @property
    def no_owner(self) :
        return \
            self.error_name == DBUS.ERROR_NAME_HAS_NO_OWNER
    #end no_owner

    def __repr__(self) :
        return \
            "Resolution(%s, %s, %s)" % (repr(self.name), repr(self.owner), repr(self.error_name))
    #end __repr__

#end Resolution

#+
# Event-loop bridge
#-

class EventLoopBridge :
    "maps the watch and timeout callbacks of an engine connection onto the" \
    " readers, writers and timers of an asyncio event loop. Whenever a watch or" \
    " timeout fires, all queued messages are dispatched before returning to the loop."

    __slots__ = ("loop", "_conn", "_watches", "_timers", "_attached") # to forestall typos

    def __init__(self, conn, loop) :
        self.loop = loop
        self._conn = conn
        self._watches = {} # Watch → (fd, flags) while registered with loop, else None
        self._timers = {} # Timeout → TimerHandle while scheduled, else None
        self._attached = False
    #end __init__

    def attach(self) :
        self._attached = True
        self._conn.set_watch_functions \
          (
            add_function = self._add_watch,
            remove_function = self._remove_watch,
            toggled_function = self._toggle_watch,
            data = None
          )
        self._conn.set_timeout_functions \
          (
            add_function = self._add_timeout,
            remove_function = self._remove_timeout,
            toggled_function = self._toggle_timeout,
            data = None
          )
    #end attach

    def halt(self) :
        "stops any further dispatching, without releasing registrations."
        self._attached = False
    #end halt

    def detach(self) :
        "uninstalls the watch and timeout functions and forgets all registrations."
        self._attached = False
        self._conn.set_watch_functions(None, None, None, None)
        self._conn.set_timeout_functions(None, None, None, None)
        for watch in list(self._watches) :
            self._suspend_watch(watch)
        #end for
        self._watches.clear()
        for timeout in list(self._timers) :
            self._unschedule(timeout)
        #end for
        self._timers.clear()
    #end detach

    @property
    def watch_count(self) :
        return \
            len(self._watches)
    #end watch_count

    @property
    def timer_count(self) :
        return \
            len(self._timers)
    #end timer_count

    def drain(self) :
        "dispatches queued messages until the connection reports there are none left."
        count = 0
        while self._attached and self._conn.dispatch_status == DBUS.DISPATCH_DATA_REMAINS :
            status = self._conn.dispatch()
            count += 1
            if status == DBUS.DISPATCH_NEED_MEMORY :
                logger.error("not enough memory for connection dispatch")
                break
            #end if
        #end while
        if count != 0 :
            logger.debug("dispatched %d message(s)", count)
        #end if
        return \
            count
    #end drain

    def _resume_watch(self, watch) :
        if self._watches.get(watch) == None :
            fd = watch.fileno()
            flags = watch.flags
            if flags & DBUS.WATCH_READABLE != 0 :
                self.loop.add_reader(fd, self._handle_watch, watch, DBUS.WATCH_READABLE)
            #end if
            if flags & DBUS.WATCH_WRITABLE != 0 :
                self.loop.add_writer(fd, self._handle_watch, watch, DBUS.WATCH_WRITABLE)
            #end if
            self._watches[watch] = (fd, flags)
        #end if
    #end _resume_watch

    def _suspend_watch(self, watch) :
        registered = self._watches.get(watch)
        if registered != None :
            fd, flags = registered
            if flags & DBUS.WATCH_READABLE != 0 :
                self.loop.remove_reader(fd)
            #end if
            if flags & DBUS.WATCH_WRITABLE != 0 :
                self.loop.remove_writer(fd)
            #end if
            self._watches[watch] = None
        #end if
    #end _suspend_watch

    def _add_watch(self, watch, data) :
        if watch not in self._watches :
            self._watches[watch] = None
            logger.debug("add watch on fd %d, flags %#x", watch.fileno(), watch.flags)
        #end if
        if watch.enabled :
            self._resume_watch(watch)
        #end if
        return \
            True
    #end _add_watch

    def _remove_watch(self, watch, data) :
        if watch in self._watches :
            self._suspend_watch(watch)
            del self._watches[watch]
            logger.debug("remove watch %s", repr(watch))
        #end if
    #end _remove_watch

    def _toggle_watch(self, watch, data) :
        if watch in self._watches :
            if watch.enabled :
                self._resume_watch(watch)
            else :
                self._suspend_watch(watch)
            #end if
        #end if
    #end _toggle_watch

    def _handle_watch(self, watch, flags) :
        if self._watches.get(watch) != None :
            watch.handle(flags)
            self.drain()
        #end if
    #end _handle_watch

    def _schedule(self, timeout) :
        self._timers[timeout] = self.loop.call_later(timeout.interval, self._handle_timeout, timeout)
    #end _schedule

    def _unschedule(self, timeout) :
        handle = self._timers.get(timeout)
        if handle != None :
            handle.cancel()
            self._timers[timeout] = None
        #end if
    #end _unschedule

    def _add_timeout(self, timeout, data) :
        if timeout not in self._timers :
            self._timers[timeout] = None
            logger.debug("add timeout, interval %.3fs", timeout.interval)
        #end if
        if timeout.enabled and self._timers[timeout] == None :
            self._schedule(timeout)
        #end if
        return \
            True
    #end _add_timeout

    def _remove_timeout(self, timeout, data) :
        if timeout in self._timers :
            self._unschedule(timeout)
            del self._timers[timeout]
            logger.debug("remove timeout %s", repr(timeout))
        #end if
    #end _remove_timeout

    def _toggle_timeout(self, timeout, data) :
        # re-enabling restarts the interval from now
        if timeout in self._timers :
            self._unschedule(timeout)
            if timeout.enabled :
                self._schedule(timeout)
            #end if
        #end if
    #end _toggle_timeout

    def _handle_timeout(self, timeout) :
        if timeout in self._timers :
            self._timers[timeout] = None
            timeout.handle()
            # handle() may have removed or rescheduled the timeout
            if timeout in self._timers and self._timers[timeout] == None and timeout.enabled :
                self._schedule(timeout)
            #end if
            self.drain()
        #end if
    #end _handle_timeout

#end EventLoopBridge

#+
# Pending calls
#-

class PendingCallTable :
    "keeps track of outstanding method calls on one connection, and invokes the" \
    " completion callback for each exactly once, with the reply, the error or the" \
    " timeout that ended it."

    __slots__ = ("loop", "_entries", "_on_corrupt") # to forestall typos

    def __init__(self, loop, on_corrupt = None) :
        self.loop = loop
        self._entries = {}
        self._on_corrupt = on_corrupt
    #end __init__

    def __len__(self) :
        return \
            len(self._entries)
    #end __len__

    def send(self, conn, message, timeout, on_done) :
        "sends message on the engine connection conn, arranging for on_done(CallResult)" \
        " to be called when it completes. Returns the PendingCall, or None if the" \
        " connection could not send; in that case on_done will still be called, but" \
        " not before this method returns."
        pending = conn.send_with_reply(message, timeout)
        if pending != None :
            self._entries[pending] = on_done
              # must be in place before notify can fire
            pending.set_notify(self._notify, None)
        else :
            self.loop.call_soon \
              (
                _invoke_callback,
                on_done,
                CallResult.error(DBUS.ERROR_DISCONNECTED, "connection is closed")
              )
        #end if
        return \
            pending
    #end send

    def _notify(self, pending, user_data) :
        on_done = self._entries.pop(pending, None)
        if on_done != None :
            corrupt = None
            try :
                result = _reply_result(pending.steal_reply())
            except CorruptMessage as err :
                result = CallResult.error(DBUS.ERROR_INCONSISTENT_MESSAGE, err.message)
                corrupt = err
            #end try
            _invoke_callback(on_done, result)
            if corrupt != None and self._on_corrupt != None :
                self._on_corrupt(corrupt)
            #end if
        #end if
    #end _notify

    def close(self) :
        "cancels all outstanding calls, completing each with a disconnected error."
        entries = list(self._entries.items())
        self._entries.clear()
        for pending, on_done in entries :
            pending.cancel()
        #end for
        for pending, on_done in entries :
            _invoke_callback(on_done, CallResult.error(DBUS.ERROR_DISCONNECTED, "connection closed"))
        #end for
    #end close

#end PendingCallTable

#+
# Name resolution
#-

class NameResolver :
    "cache of bus names to the unique names of their current owners. Every name" \
    " looked up gets a standing subscription to its ownership changes, set up" \
    " before the owner is asked for, so no change can slip between the two."

    __slots__ = ("_w_conn", "_owners", "_watched") # to forestall typos

    def __init__(self, conn) :
        self._w_conn = weak_ref(conn)
        self._owners = {DBUS.SERVICE_DBUS : DBUS.SERVICE_DBUS}
        self._watched = set()
    #end __init__

    def lookup(self, name) :
        "the cached owner of name, None if not known."
        if name.startswith(":") :
            result = name
        else :
            result = self._owners.get(name)
        #end if
        return \
            result
    #end lookup

    def is_watched(self, name) :
        return \
            name in self._watched
    #end is_watched

    def resolve(self, name, on_done) :
        "finds the current owner of name, calling on_done(Resolution) when known." \
        " Completes immediately for unique names and names already in the cache."

        def got_owner(result) :
            if result.ok :
                owner = result.values[0].as_str()
                self._owners[name] = owner
                logger.debug("name %s is owned by %s", name, owner)
                resolution = Resolution(name, owner)
            elif result.error_name == DBUS.ERROR_NAME_HAS_NO_OWNER :
                logger.debug("name %s has no owner yet", name)
                resolution = Resolution(name, None, result.error_name, result.error_message)
            else :
                logger.warning("cannot resolve %s: %s", name, result.error_name)
                resolution = Resolution(name, None, result.error_name, result.error_message)
            #end if
            on_done(resolution)
        #end got_owner

    #begin resolve
        owner = self.lookup(name)
        if owner != None :
            _invoke_callback(on_done, Resolution(name, owner))
        else :
            conn = self._w_conn()
            assert conn != None, "parent Connection has gone"
            self.watch(name)
              # subscribed before asking, so no ownership change can be missed
            conn._bus_call("GetNameOwner", [name], "s", got_owner)
        #end if
    #end resolve

    def watch(self, name) :
        "subscribes to ownership changes of name, unless already subscribed."
        if not name.startswith(":") and name not in self._watched :
            self._watched.add(name)
            conn = self._w_conn()
            assert conn != None, "parent Connection has gone"
            conn._add_match \
              (
                {
                    "type" : "signal",
                    "sender" : DBUS.SERVICE_DBUS,
                    "path" : DBUS.PATH_DBUS,
                    "interface" : DBUS.INTERFACE_DBUS,
                    "member" : "NameOwnerChanged",
                    "arg0" : name,
                }
              )
        #end if
    #end watch

    def update(self, message) :
        "applies a NameOwnerChanged signal to the cache."
        args = dbuswire.decode_args(message.iter_init())
        if len(args) == 3 and all(isinstance(a, dbuswire.String) for a in args) :
            name, old_owner, new_owner = (a.value for a in args)
            if new_owner == "" :
                if self._owners.pop(name, None) != None :
                    logger.debug("name %s lost its owner %s", name, old_owner)
                #end if
            elif not name.startswith(":") :
                self._owners[name] = new_owner
                logger.debug("name %s now owned by %s", name, new_owner)
            #end if
        else :
            logger.warning("ignoring NameOwnerChanged with signature %s", repr(message.signature))
        #end if
    #end update

#end NameResolver

#+
# Proxies
#-

class ProxyRouter :
    "delivers incoming signals to every proxy with a matching handler. Proxies" \
    " are held weakly, and no proxy ever consumes a signal."

    __slots__ = ("_proxies",) # to forestall typos

    def __init__(self) :
        self._proxies = WeakSet()
    #end __init__

    def add(self, proxy) :
        self._proxies.add(proxy)
    #end add

    def discard(self, proxy) :
        self._proxies.discard(proxy)
    #end discard

    def __len__(self) :
        return \
            len(self._proxies)
    #end __len__

    def route(self, message, resolver) :
        "passes signal message to the handlers of all interested proxies, returning" \
        " the number of handlers invoked."
        count = 0
        if message.type == DBUS.MESSAGE_TYPE_SIGNAL :
            args = None
            for proxy in list(self._proxies) :
                handler = proxy._handler_for(message, resolver)
                if handler != None :
                    if args == None :
                        args = dbuswire.decode_args(message.iter_init())
                    #end if
                    _invoke_callback(handler, list(args))
                    count += 1
                #end if
            #end for
        #end if
        return \
            count
    #end route

#end ProxyRouter

class ObjectProxy :
    "represents a remote object: the bus name of the service that owns it, its" \
    " path, and optionally the interface to restrict method calls and signals to." \
    " Do not instantiate directly; use Connection.make_proxy or Connection.proxy.\n" \
    "\n" \
    "A standalone proxy keeps its Connection alive; a borrowed one (standalone" \
    " = False) does not, and stops working when the Connection goes away."

    __slots__ = \
      (
        "__weakref__",
        "service",
        "path",
        "interface",
        "standalone",
        "_conn",
        "_w_conn",
        "_signal_handlers",
        "_closed",
      ) # to forestall typos

    def __init__(self, conn, service, path, *, interface = None, standalone = True) :
        self.service = service
        self.path = path
        self.interface = interface
        self.standalone = standalone
        if standalone :
            self._conn = conn
        else :
            self._conn = None
        #end if
        self._w_conn = weak_ref(conn)
        self._signal_handlers = {}
        self._closed = False
    #end __init__

    @property
    def connection(self) :
        "the Connection this proxy talks over, or None if it has gone."
        return \
            self._w_conn()
    #end connection

    def _get_conn(self) :
        conn = self._w_conn()
        if conn == None or conn.closed :
            raise DBusError(DBUS.ERROR_DISCONNECTED, "connection is closed")
        #end if
        if self._closed :
            raise RuntimeError("proxy has been closed")
        #end if
        return \
            conn
    #end _get_conn

    def __repr__(self) :
        return \
            "ObjectProxy(%s, %s, %s)" % (repr(self.service), repr(self.path), repr(self.interface))
    #end __repr__

    def invoke(self, method, *args, on_done, signature = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "calls the named method on the remote object with the given arguments, and" \
        " arranges for on_done(CallResult) to be called once the call completes." \
        " Arguments are converted according to signature if given, otherwise their" \
        " types are inferred. timeout is in seconds, or one of the DBUS.TIMEOUT_xxx" \
        " values."
        conn = self._get_conn()
        values = dbuswire.to_wire_args(args, signature)
        message = conn.engine.Message.new_method_call \
          (
            destination = self.service,
            path = self.path,
            iface = self.interface,
            method = method
          )
        dbuswire.encode_args(values, message.iter_init_append())
        conn._send_call(message, timeout, on_done)
    #end invoke

    async def call(self, method, *args, signature = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "coroutine version of invoke: returns the CallResult."
        conn = self._get_conn()
        done = conn.loop.create_future()

        def on_done(result) :
            if not done.done() :
                done.set_result(result)
            #end if
        #end on_done

    #begin call
        self.invoke(method, *args, on_done = on_done, signature = signature, timeout = timeout)
        return \
            await done
    #end call

    def _signal_rule(self, signal) :
        return \
            {
                "type" : "signal",
                "sender" : self.service,
                "path" : self.path,
                "interface" : self.interface,
                "member" : signal,
            }
    #end _signal_rule

    def register_signal_handler(self, signal, handler) :
        "arranges for handler(args) to be called with the list of WireValue arguments" \
        " every time the remote object emits the named signal. Replaces any handler" \
        " already registered for that signal."
        conn = self._get_conn()
        if signal not in self._signal_handlers :
            conn._add_match(self._signal_rule(signal))
        #end if
        self._signal_handlers[signal] = handler
        if conn._resolver.lookup(self.service) == None and not conn._resolver.is_watched(self.service) :
            # so the sender can be recognized once the name has an owner
            conn._resolver.resolve(self.service, lambda resolution : None)
        #end if
        conn._router.add(self)
    #end register_signal_handler

    def unregister_signal_handler(self, signal) :
        "stops delivering the named signal; no-op if no handler was registered."
        if signal in self._signal_handlers :
            del self._signal_handlers[signal]
            conn = self._w_conn()
            if conn != None and not conn.closed :
                conn._remove_match(self._signal_rule(signal))
            #end if
        #end if
    #end unregister_signal_handler

    def _handler_for(self, message, resolver) :
        # returns the handler for the signal message if it is meant for this
        # proxy. The sender is resolved now, since ownership may have changed
        # since the proxy was created.
        handler = self._signal_handlers.get(message.member)
        if (
                handler != None
            and
                message.path == self.path
            and
                (self.interface == None or message.interface == self.interface)
        ) :
            owner = resolver.lookup(self.service)
            if owner == None or message.sender != owner :
                handler = None
            #end if
        else :
            handler = None
        #end if
        return \
            handler
    #end _handler_for

    def close(self) :
        "detaches this proxy from signal routing and drops its bus matches."
        if not self._closed :
            for signal in list(self._signal_handlers) :
                self.unregister_signal_handler(signal)
            #end for
            conn = self._w_conn()
            if conn != None :
                conn._router.discard(self)
            #end if
            self._closed = True
            self._conn = None
        #end if
    #end close

    def __del__(self) :
        # a proxy dropped without being closed gives up its bus matches on the
        # next turn of the loop.
        if not self._closed and len(self._signal_handlers) != 0 :
            conn = self._w_conn()
            if conn != None and not conn.closed and not conn.loop.is_closed() :
                conn.loop.call_soon \
                  (
                    conn._drop_matches,
                    list(self._signal_rule(signal) for signal in self._signal_handlers)
                  )
            #end if
        #end if
    #end __del__

#end ObjectProxy

#+
# Exported objects
#-

class MethodReply :
    "passed to a method handler for sending back the reply to the call. Exactly one" \
    " of success or error may be called, exactly once. Holds on to the incoming" \
    " message and its connection until then, so the reply may be sent at any time."

    __slots__ = ("_conn", "_message", "_used") # to forestall typos

    def __init__(self, conn, message) :
        self._conn = conn
        self._message = message
        self._used = False
    #end __init__

    @property
    def used(self) :
        return \
            self._used
    #end used

    @property
    def message(self) :
        "the method-call Message being replied to."
        return \
            self._message
    #end message

    def _check_unused(self) :
        if self._used :
            raise RuntimeError("method reply already sent")
        #end if
    #end _check_unused

    def success(self, values = None, signature = None) :
        "sends a method return carrying values, converted according to signature if given."
        self._check_unused()
        values = dbuswire.to_wire_args(values or (), signature)
        self._used = True
        if not self._message.no_reply :
            reply = self._message.new_method_return()
            dbuswire.encode_args(values, reply.iter_init_append())
            self._conn._send(reply)
        #end if
        self._release()
    #end success

    def error(self, name, message = None) :
        "sends an error reply with the given error name and optional message."
        self._check_unused()
        self._used = True
        if not self._message.no_reply :
            self._conn._send(self._message.new_error(name, message))
        #end if
        self._release()
    #end error

    def _release(self) :
        self._conn = None
        self._message = None
    #end _release

#end MethodReply

class ExportedObject :
    "an object that answers method calls. methods maps interface names to" \
    " dictionaries mapping method names to handlers; each handler is invoked as\n" \
    "\n" \
    "    handler(args, reply)\n" \
    "\n" \
    "where args is the list of WireValue arguments and reply is a MethodReply." \
    " A handler may raise ErrorReturn to reply with an error, or may be a" \
    " coroutine function, in which case it runs as a task on the connection's loop."

    __slots__ = ("__weakref__", "methods", "_w_conn", "_path") # to forestall typos

    def __init__(self, methods) :
        self.methods = {}
        for interface, members in methods.items() :
            for member, handler in members.items() :
                if not callable(handler) :
                    raise TypeError("handler for %s.%s is not callable" % (interface, member))
                #end if
            #end for
            self.methods[interface] = dict(members)
        #end for
        self._w_conn = None
        self._path = None
    #end __init__

    @property
    def connection(self) :
        "the Connection this object is exported on, None if not exported."
        if self._w_conn != None :
            result = self._w_conn()
        else :
            result = None
        #end if
        return \
            result
    #end connection

    @property
    def path(self) :
        return \
            self._path
    #end path

    def find_handler(self, interface, member) :
        "returns the handler for member on interface. If interface is None, the" \
        " interfaces are searched in lexicographic order of name, and the first one" \
        " that defines member wins."
        if interface != None :
            handler = self.methods.get(interface, {}).get(member)
        else :
            handler = None
            for name in sorted(self.methods) :
                handler = self.methods[name].get(member)
                if handler != None :
                    break
                #end if
            #end for
        #end if
        return \
            handler
    #end find_handler

    def emit_signal(self, name, interface, args = None, signature = None) :
        "broadcasts a signal from this object. Returns False, sending nothing, if the" \
        " object is not currently exported."
        conn = self.connection
        if conn == None or conn.closed or self._path == None :
            result = False
        else :
            values = dbuswire.to_wire_args(args or (), signature)
            message = conn.engine.Message.new_signal(self._path, interface, name)
            dbuswire.encode_args(values, message.iter_init_append())
            result = conn._send(message)
        #end if
        return \
            result
    #end emit_signal

#end ExportedObject

class ObjectDispatcher :
    "routes incoming method calls to the ExportedObject registered at their path."

    __slots__ = ("_w_conn", "_objects", "_vtable") # to forestall typos

    def __init__(self, conn) :
        self._w_conn = weak_ref(conn)
        self._objects = {}
        self._vtable = conn.engine.ObjectPathVTable(message = self._handle_message)
    #end __init__

    @property
    def paths(self) :
        return \
            sorted(self._objects)
    #end paths

    def get(self, path) :
        return \
            self._objects.get(path)
    #end get

    def export(self, obj, path) :
        conn = self._w_conn()
        if obj.connection != conn or obj.path != path :
            if obj.connection != None :
                obj.connection.unexport(obj)
            #end if
            self.unexport_path(path)
            conn._conn.register_object_path(path, self._vtable, None)
            self._objects[path] = obj
            obj._w_conn = weak_ref(conn)
            obj._path = path
            logger.debug("exported object at %s", path)
        #end if
    #end export

    def unexport_path(self, path) :
        obj = self._objects.pop(path, None)
        if obj != None :
            conn = self._w_conn()
            conn._conn.unregister_object_path(path)
            obj._w_conn = None
            obj._path = None
            logger.debug("unexported object at %s", path)
        #end if
        return \
            obj != None
    #end unexport_path

    def close(self) :
        for path in list(self._objects) :
            self.unexport_path(path)
        #end for
    #end close

    def _handle_message(self, engine_conn, message, user_data) :
        # object-path handler installed with the engine.
        result = DBUS.HANDLER_RESULT_NOT_YET_HANDLED
        conn = self._w_conn()
        if conn != None and not conn.closed and message.type == DBUS.MESSAGE_TYPE_METHOD_CALL :
            obj = self._objects.get(message.path)
            if obj != None :
                self.dispatch(conn, obj, message)
                result = DBUS.HANDLER_RESULT_HANDLED
            #end if
        #end if
        return \
            result
    #end _handle_message

    def dispatch(self, conn, obj, message) :
        "invokes the handler on obj for method-call message, replying with an error" \
        " if there is none or it fails."
        reply = MethodReply(conn, message)
        try :
            args = dbuswire.decode_args(message.iter_init())
        except CorruptMessage as err :
            args = None
            conn._fatal(err)
        #end try
        if args != None :
            handler = obj.find_handler(message.interface, message.member)
            if handler == None :
                logger.debug("no method %s.%s at %s", message.interface, message.member, message.path)
                reply.error \
                  (
                    DBUS.ERROR_UNKNOWN_METHOD,
                    "no method %s on interface %s at %s" % (message.member, message.interface, message.path)
                  )
            else :
                try :
                    result = handler(args, reply)
                except ErrorReturn as err :
                    self._fail(reply, err)
                except Exception as err :
                    logger.exception("method handler %s failed", message.member)
                    self._fail(reply, err)
                else :
                    if asyncio.iscoroutine(result) :
                        conn._create_task(self._await_handler(result, reply, message.member))
                    #end if
                #end try
            #end if
        #end if
    #end dispatch

    @staticmethod
    def _fail(reply, err) :
        if not reply.used :
            if isinstance(err, ErrorReturn) :
                reply.error(err.name, err.message)
            else :
                reply.error(DBUS.ERROR_FAILED, str(err))
            #end if
        #end if
    #end _fail

    async def _await_handler(self, coro, reply, member) :
        try :
            await coro
        except ErrorReturn as err :
            self._fail(reply, err)
        except Exception as err :
            logger.exception("method handler %s failed", member)
            self._fail(reply, err)
        #end try
    #end _await_handler

#end ObjectDispatcher

#+
# Connection
#-

class Connection :
    "an event-driven connection to a bus, attached to an asyncio event loop. Do" \
    " not instantiate directly; use Connection.open or Connection.connect.\n" \
    "\n" \
    "Owns everything attached to the engine connection: the loop registrations," \
    " the outstanding calls, the owner cache, the bus match subscriptions, the" \
    " proxies and the exported objects. close() releases all of these before" \
    " closing the engine connection."

    __slots__ = \
      (
        "__weakref__",
        "engine",
        "loop",
        "_conn",
        "_bridge",
        "_pending",
        "_resolver",
        "_router",
        "_dispatcher",
        "_matches",
        "_tasks",
        "_closed",
      ) # to forestall typos

    def __init__(self, conn, *, loop = None, engine = None) :
        if engine == None :
            engine = dbuswire
        #end if
        if loop == None :
            loop = asyncio.get_running_loop()
        #end if
        self.engine = engine
        self.loop = loop
        self._conn = conn
        self._closed = False
        self._matches = {} # rule string → subscriber count
        self._tasks = set()
        self._pending = PendingCallTable(loop, on_corrupt = self._fatal)
        self._resolver = NameResolver(self)
        self._router = ProxyRouter()
        self._dispatcher = ObjectDispatcher(self)
        self._bridge = EventLoopBridge(conn, loop)
        conn.set_exit_on_disconnect(False)
        conn.add_filter(self._filter, None)
        self._bridge.attach()
        # pick up anything already queued before the bridge was in place
        loop.call_soon(self._bridge.drain)
    #end __init__

    @classmethod
    def open(celf, bus_type, *, loop = None, engine = None) :
        "opens a new private connection to one of the well-known buses, bus_type" \
        " being a BUS value."
        if engine == None :
            engine = dbuswire
        #end if
        bus_type = BUS(bus_type)
        try :
            conn = engine.Connection.bus_get(bus_type.value, private = True)
        except DBusError as err :
            raise ConnectionFailed(err.name, err.message) from err
        #end try
        logger.debug("opened %s bus connection as %s", bus_type.name.lower(), conn.bus_unique_name)
        return \
            celf(conn, loop = loop, engine = engine)
    #end open

    @classmethod
    def connect(celf, address, *, loop = None, engine = None) :
        "opens a new private connection to the bus at the specified address, and" \
        " registers with it."
        if engine == None :
            engine = dbuswire
        #end if
        try :
            conn = engine.Connection.open(address, private = True)
        except DBusError as err :
            raise ConnectionFailed(err.name, err.message) from err
        #end try
        logger.debug("connected to %s as %s", address, conn.bus_unique_name)
        return \
            celf(conn, loop = loop, engine = engine)
    #end connect

    @property
    def unique_name(self) :
        return \
            self._conn.bus_unique_name
    #end unique_name

    @property
    def closed(self) :
        return \
            self._closed
    #end closed

    @property
    def pending_count(self) :
        "the number of method calls awaiting completion."
        return \
            len(self._pending)
    #end pending_count

    @property
    def match_rules(self) :
        "the match rules currently subscribed to."
        return \
            sorted(self._matches)
    #end match_rules

    def _create_task(self, coro) :
        task = self.loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return \
            task
    #end _create_task

    def _send(self, message) :
        # sends a message not expecting a reply; returns whether it was sent.
        if self._closed :
            logger.debug("dropping message to closed connection")
            result = False
        else :
            self._conn.send(message)
            result = True
        #end if
        return \
            result
    #end _send

    def _send_call(self, message, timeout, on_done) :
        if self._closed :
            self.loop.call_soon \
              (
                _invoke_callback,
                on_done,
                CallResult.error(DBUS.ERROR_DISCONNECTED, "connection is closed")
              )
        else :
            self._pending.send(self._conn, message, timeout, on_done)
        #end if
    #end _send_call

    def _bus_call(self, method, args, signature, on_done) :
        # calls a method of the bus itself.
        message = self.engine.Message.new_method_call \
          (
            destination = DBUS.SERVICE_DBUS,
            path = DBUS.PATH_DBUS,
            iface = DBUS.INTERFACE_DBUS,
            method = method
          )
        dbuswire.encode_args(dbuswire.to_wire_args(args, signature), message.iter_init_append())
        self._send_call(message, DBUS.TIMEOUT_USE_DEFAULT, on_done)
    #end _bus_call

    def _add_match(self, rule) :
        # subscribes to the match rule, counting repeat subscriptions.
        rulestr = dbuswire.format_rule(rule)

        def added(result) :
            if not result.ok :
                logger.warning("AddMatch %s failed: %s", rulestr, result.error_name)
            #end if
        #end added

    #begin _add_match
        count = self._matches.get(rulestr, 0)
        self._matches[rulestr] = count + 1
        if count == 0 :
            logger.debug("add match %s", rulestr)
            self._bus_call("AddMatch", [rulestr], "s", added)
        #end if
    #end _add_match

    def _remove_match(self, rule) :
        # drops one subscription to the match rule, unsubscribing after the last.
        rulestr = dbuswire.format_rule(rule)

        def removed(result) :
            if not result.ok and result.error_name != DBUS.ERROR_DISCONNECTED :
                logger.warning("RemoveMatch %s failed: %s", rulestr, result.error_name)
            #end if
        #end removed

    #begin _remove_match
        count = self._matches.get(rulestr, 0)
        if count > 1 :
            self._matches[rulestr] = count - 1
        elif count == 1 :
            del self._matches[rulestr]
            logger.debug("remove match %s", rulestr)
            self._bus_call("RemoveMatch", [rulestr], "s", removed)
        #end if
    #end _remove_match

    def _drop_matches(self, rules) :
        # removes the matches of a proxy that went away without being closed.
        if not self._closed :
            for rule in rules :
                self._remove_match(rule)
            #end for
        #end if
    #end _drop_matches

    def _filter(self, conn, message, user_data) :
        # the one filter installed on the engine connection. Every message
        # is passed on to other handlers as well.
        if not self._closed and message.type == DBUS.MESSAGE_TYPE_SIGNAL :
            try :
                if (
                        message.interface == DBUS.INTERFACE_DBUS
                    and
                        message.member == "NameOwnerChanged"
                    and
                        message.sender == DBUS.SERVICE_DBUS
                ) :
                    self._resolver.update(message)
                elif (
                        message.interface == DBUS.INTERFACE_LOCAL
                    and
                        message.member == "Disconnected"
                ) :
                    logger.info("connection %s disconnected by bus", self.unique_name)
                    self._bridge.halt()
                    self.loop.call_soon(self.close)
                #end if
                self._router.route(message, self._resolver)
            except CorruptMessage as err :
                self._fatal(err)
            #end try
        #end if
        return \
            DBUS.HANDLER_RESULT_NOT_YET_HANDLED
    #end _filter

    def _fatal(self, err) :
        # a corrupt message means the connection can no longer be trusted.
        if not self._closed :
            logger.error("closing connection %s: %s", self.unique_name, err)
            self._bridge.halt()
            self.loop.call_soon(self.close)
        #end if
    #end _fatal

    def request_name(self, name, on_done, *, allow_replacement = False, queue = True, replace_existing = False) :
        "asks the bus for ownership of the well-known name, calling on_done with a" \
        " REQUEST_NAME value, or None if the request failed."
        flags = \
            (
                (0, DBUS.NAME_FLAG_ALLOW_REPLACEMENT)[allow_replacement]
            |
                (0, DBUS.NAME_FLAG_REPLACE_EXISTING)[replace_existing]
            |
                (DBUS.NAME_FLAG_DO_NOT_QUEUE, 0)[queue]
            )

        def got_reply(result) :
            on_done(_name_reply(REQUEST_NAME, "RequestName", name, result))
        #end got_reply

    #begin request_name
        self._bus_call("RequestName", [name, flags], "su", got_reply)
    #end request_name

    def release_name(self, name, on_done) :
        "gives up ownership of the well-known name, calling on_done with a" \
        " RELEASE_NAME value, or None if the request failed."

        def got_reply(result) :
            on_done(_name_reply(RELEASE_NAME, "ReleaseName", name, result))
        #end got_reply

    #begin release_name
        self._bus_call("ReleaseName", [name], "s", got_reply)
    #end release_name

    def proxy(self, service, path, *, interface = None, standalone = True) :
        "returns an ObjectProxy for the object at path owned by service, without" \
        " resolving service first."
        if self._closed :
            raise DBusError(DBUS.ERROR_DISCONNECTED, "connection is closed")
        #end if
        result = ObjectProxy(self, service, path, interface = interface, standalone = standalone)
        self._router.add(result)
        return \
            result
    #end proxy

    def make_proxy(self, service, path, on_done, *, interface = None, standalone = True) :
        "resolves service to its current owner, then calls on_done with an ObjectProxy" \
        " for the object at path, or None if the name could not be resolved. A name" \
        " with no owner yet still yields a proxy."

        def resolved(resolution) :
            if resolution.ok and not self._closed :
                result = self.proxy(service, path, interface = interface, standalone = standalone)
            else :
                result = None
            #end if
            on_done(result)
        #end resolved

    #begin make_proxy
        self._resolver.resolve(service, resolved)
    #end make_proxy

    def resolve(self, name, on_done) :
        "finds the current owner of name, calling on_done(Resolution)."
        self._resolver.resolve(name, on_done)
    #end resolve

    def cached_owner(self, name) :
        "the owner of name as currently known, without asking the bus."
        return \
            self._resolver.lookup(name)
    #end cached_owner

    def export(self, obj, path) :
        "makes obj answer method calls addressed to path, replacing any object already" \
        " exported there."
        if self._closed :
            raise DBusError(DBUS.ERROR_DISCONNECTED, "connection is closed")
        #end if
        if not isinstance(obj, ExportedObject) :
            raise TypeError("obj must be an ExportedObject")
        #end if
        dbuswire.ObjectPath(path) # validate
        self._dispatcher.export(obj, path)
    #end export

    def unexport(self, obj) :
        "stops exporting obj; no-op if it is not exported on this connection."
        result = False
        if obj.connection == self :
            path = obj.path
            if self._dispatcher.get(path) is obj :
                result = self._dispatcher.unexport_path(path)
            #end if
        #end if
        return \
            result
    #end unexport

    def unexport_path(self, path) :
        "stops exporting whatever object is at path; no-op if there is none."
        return \
            self._dispatcher.unexport_path(path)
    #end unexport_path

    def exported_path(self, obj) :
        "the path obj is exported at on this connection, or None."
        if obj.connection == self :
            result = obj.path
        else :
            result = None
        #end if
        return \
            result
    #end exported_path

    def close(self) :
        "releases everything attached to the connection, then closes it. Outstanding" \
        " method calls complete with a disconnected error. Harmless if already closed."
        if not self._closed :
            logger.debug("closing connection %s", self.unique_name)
            self._dispatcher.close()
            connected = self._conn.is_connected
            for rulestr in list(self._matches) :
                if connected :
                    message = self.engine.Message.new_method_call \
                      (
                        destination = DBUS.SERVICE_DBUS,
                        path = DBUS.PATH_DBUS,
                        iface = DBUS.INTERFACE_DBUS,
                        method = "RemoveMatch"
                      )
                    dbuswire.encode(dbuswire.String(rulestr), message.iter_init_append())
                    message.no_reply = True
                    self._conn.send(message)
                #end if
            #end for
            self._matches.clear()
            self._closed = True
            self._pending.close()
            self._conn.remove_filter(self._filter, None)
            self._bridge.detach()
            for task in list(self._tasks) :
                task.cancel()
            #end for
            if connected :
                self._conn.flush()
            #end if
            self._conn.close()
        #end if
    #end close

#end Connection
