"""
Low-level layer of DBusWire: the typed value model for everything that can
cross a D-Bus connection, the signature grammar, match-rule strings, the
marshaler that moves values in and out of message argument cursors, and a
ctypes binding to libdbus <https://dbus.freedesktop.org/doc/api/html/index.html>
which supplies connections, messages, pending calls, watches and timeouts.

libdbus itself is only loaded the first time one of its routines is needed,
so the value model and marshaler can be used against any object providing
the same cursor interface.
"""
#+
# Copyright 2026 the DBusWire authors.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import re
import logging
import ctypes as ct
from collections.abc import \
    Mapping
from weakref import \
    WeakValueDictionary
import atexit

logger = logging.getLogger(__name__)

LIBDBUS_NAME = "libdbus-1.so.3"

class _LibDBus :
    # stands in for the loaded libdbus library. The library is loaded, and
    # the argument and result types of every routine used here declared,
    # on the first attribute reference.

    __slots__ = ("_lib",) # to forestall typos

    def __init__(self) :
        self._lib = None
    #end __init__

    def __getattr__(self, name) :
        if self._lib == None :
            self._lib = _load_libdbus()
        #end if
        return \
            getattr(self._lib, name)
    #end __getattr__

    @property
    def loaded(self) :
        return \
            self._lib != None
    #end loaded

#end _LibDBus

dbus = _LibDBus()

def libdbus_available() :
    "is libdbus loadable on this system."
    try :
        dbus.dbus_get_version
    except OSError :
        result = False
    else :
        result = True
    #end try
    return \
        result
#end libdbus_available

class DBUS :
    "useful definitions adapted from the D-Bus includes. Apart from the constants," \
    " prefer the wrapper classes defined outside this class to the low-level" \
    " structures."

    # General ctypes gotcha: when passing addresses of ctypes-constructed objects
    # to routine calls, store the object into a local variable first, so it
    # cannot be disposed of before the routine is entered.

    # from dbus-protocol.h:

    TYPE_INVALID = 0

    # basic types
    TYPE_BYTE = ord('y')
    TYPE_BOOLEAN = ord('b')
    TYPE_INT16 = ord('n')
    TYPE_UINT16 = ord('q')
    TYPE_INT32 = ord('i')
    TYPE_UINT32 = ord('u')
    TYPE_INT64 = ord('x')
    TYPE_UINT64 = ord('t')
    TYPE_DOUBLE = ord('d')
    TYPE_STRING = ord('s')
    TYPE_OBJECT_PATH = ord('o')
    TYPE_SIGNATURE = ord('g')
    TYPE_UNIX_FD = ord('h')

    # container types
    TYPE_ARRAY = ord('a')
    TYPE_VARIANT = ord('v')
    TYPE_STRUCT = ord('r') # signatures use STRUCT_BEGIN/END_CHAR instead
    TYPE_DICT_ENTRY = ord('e') # signatures use DICT_ENTRY_BEGIN/END_CHAR instead

    STRUCT_BEGIN_CHAR = ord('(')
    STRUCT_END_CHAR = ord(')')
    DICT_ENTRY_BEGIN_CHAR = ord('{')
    DICT_ENTRY_END_CHAR = ord('}')

    basic_to_ctypes = \
        { # ctypes objects suitable for holding values of D-Bus basic types
            TYPE_BYTE : ct.c_ubyte,
            TYPE_BOOLEAN : ct.c_uint, # dbus_bool_t
            TYPE_INT16 : ct.c_int16,
            TYPE_UINT16 : ct.c_uint16,
            TYPE_INT32 : ct.c_int32,
            TYPE_UINT32 : ct.c_uint32,
            TYPE_INT64 : ct.c_int64,
            TYPE_UINT64 : ct.c_uint64,
            TYPE_DOUBLE : ct.c_double,
            TYPE_STRING : ct.c_char_p,
            TYPE_OBJECT_PATH : ct.c_char_p,
            TYPE_SIGNATURE : ct.c_char_p,
            TYPE_UNIX_FD : ct.c_int,
        }

    int_ranges = \
        { # (bits, signed) for each integer type
            TYPE_BYTE : (8, False),
            TYPE_INT16 : (16, True),
            TYPE_UINT16 : (16, False),
            TYPE_INT32 : (32, True),
            TYPE_UINT32 : (32, False),
            TYPE_INT64 : (64, True),
            TYPE_UINT64 : (64, False),
        }

    def int_subtype(i, bits, signed) :
        "returns integer i after checking that it fits in the given number of bits."
        if signed :
            lo = - 1 << bits - 1
            hi = (1 << bits - 1) - 1
        else :
            lo = 0
            hi = (1 << bits) - 1
        #end if
        if i < lo or i > hi :
            raise ValueError \
              (
                "%d not in range of %s %d-bit value" % (i, ("unsigned", "signed")[signed], bits)
              )
        #end if
        return \
            i
    #end int_subtype

    MAXIMUM_NAME_LENGTH = 255
    MAXIMUM_SIGNATURE_LENGTH = 255
    MAXIMUM_TYPE_RECURSION_DEPTH = 32

    # types of message
    MESSAGE_TYPE_INVALID = 0
    MESSAGE_TYPE_METHOD_CALL = 1
    MESSAGE_TYPE_METHOD_RETURN = 2
    MESSAGE_TYPE_ERROR = 3
    MESSAGE_TYPE_SIGNAL = 4

    # errors
    ERROR_FAILED = "org.freedesktop.DBus.Error.Failed"
    ERROR_NO_MEMORY = "org.freedesktop.DBus.Error.NoMemory"
    ERROR_SERVICE_UNKNOWN = "org.freedesktop.DBus.Error.ServiceUnknown"
    ERROR_NAME_HAS_NO_OWNER = "org.freedesktop.DBus.Error.NameHasNoOwner"
    ERROR_NO_REPLY = "org.freedesktop.DBus.Error.NoReply"
    ERROR_TIMEOUT = "org.freedesktop.DBus.Error.Timeout"
    ERROR_TIMED_OUT = "org.freedesktop.DBus.Error.TimedOut"
    ERROR_DISCONNECTED = "org.freedesktop.DBus.Error.Disconnected"
    ERROR_INVALID_ARGS = "org.freedesktop.DBus.Error.InvalidArgs"
    ERROR_UNKNOWN_METHOD = "org.freedesktop.DBus.Error.UnknownMethod"
    ERROR_UNKNOWN_OBJECT = "org.freedesktop.DBus.Error.UnknownObject"
    ERROR_MATCH_RULE_NOT_FOUND = "org.freedesktop.DBus.Error.MatchRuleNotFound"
    ERROR_MATCH_RULE_INVALID = "org.freedesktop.DBus.Error.MatchRuleInvalid"
    ERROR_INVALID_SIGNATURE = "org.freedesktop.DBus.Error.InvalidSignature"
    ERROR_INCONSISTENT_MESSAGE = "org.freedesktop.DBus.Error.InconsistentMessage"
    ERROR_OBJECT_PATH_IN_USE = "org.freedesktop.DBus.Error.ObjectPathInUse"

    # from dbus-shared.h:

    BusType = ct.c_uint
    BUS_SESSION = 0
    BUS_SYSTEM = 1
    BUS_STARTER = 2

    BusHandlerResult = ct.c_uint
    HANDLER_RESULT_HANDLED = 0 # no need to try more handlers
    HANDLER_RESULT_NOT_YET_HANDLED = 1 # see if other handlers want it
    HANDLER_RESULT_NEED_MEMORY = 2 # try again later with more memory

    SERVICE_DBUS = "org.freedesktop.DBus"
    PATH_DBUS = "/org/freedesktop/DBus"
    PATH_LOCAL = "/org/freedesktop/DBus/Local"
    INTERFACE_DBUS = "org.freedesktop.DBus"
    INTERFACE_LOCAL = "org.freedesktop.DBus.Local"

    # owner flags for RequestName
    NAME_FLAG_ALLOW_REPLACEMENT = 0x1
    NAME_FLAG_REPLACE_EXISTING = 0x2
    NAME_FLAG_DO_NOT_QUEUE = 0x4

    # replies to RequestName
    REQUEST_NAME_REPLY_PRIMARY_OWNER = 1
    REQUEST_NAME_REPLY_IN_QUEUE = 2
    REQUEST_NAME_REPLY_EXISTS = 3
    REQUEST_NAME_REPLY_ALREADY_OWNER = 4

    # replies to ReleaseName
    RELEASE_NAME_REPLY_RELEASED = 1
    RELEASE_NAME_REPLY_NON_EXISTENT = 2
    RELEASE_NAME_REPLY_NOT_OWNER = 3

    # from dbus-types.h:

    bool_t = ct.c_uint

    # from dbus-connection.h:

    HandlerResult = ct.c_uint

    class Error(ct.Structure) :
        _fields_ = \
            [
                ("name", ct.c_char_p),
                ("message", ct.c_char_p),
                ("padding", 2 * ct.c_void_p),
            ]
    #end Error
    ErrorPtr = ct.POINTER(Error)

    WATCH_READABLE = 1 << 0
    WATCH_WRITABLE = 1 << 1
    WATCH_ERROR = 1 << 2
    WATCH_HANGUP = 1 << 3

    DISPATCH_DATA_REMAINS = 0 # more data available
    DISPATCH_COMPLETE = 1 # all available data has been processed
    DISPATCH_NEED_MEMORY = 2 # not enough memory to continue

    FreeFunction = ct.CFUNCTYPE(None, ct.c_void_p)
    AddWatchFunction = ct.CFUNCTYPE(bool_t, ct.c_void_p, ct.c_void_p)
    WatchToggledFunction = ct.CFUNCTYPE(None, ct.c_void_p, ct.c_void_p)
    RemoveWatchFunction = ct.CFUNCTYPE(None, ct.c_void_p, ct.c_void_p)
    AddTimeoutFunction = ct.CFUNCTYPE(bool_t, ct.c_void_p, ct.c_void_p)
    TimeoutToggledFunction = ct.CFUNCTYPE(None, ct.c_void_p, ct.c_void_p)
    RemoveTimeoutFunction = ct.CFUNCTYPE(None, ct.c_void_p, ct.c_void_p)
    PendingCallNotifyFunction = ct.CFUNCTYPE(None, ct.c_void_p, ct.c_void_p)
    HandleMessageFunction = ct.CFUNCTYPE(HandlerResult, ct.c_void_p, ct.c_void_p, ct.c_void_p)

    ObjectPathUnregisterFunction = ct.CFUNCTYPE(None, ct.c_void_p, ct.c_void_p)
    ObjectPathMessageFunction = ct.CFUNCTYPE(HandlerResult, ct.c_void_p, ct.c_void_p, ct.c_void_p)

    class ObjectPathVTable(ct.Structure) :
        pass
    #end ObjectPathVTable
    ObjectPathVTable._fields_ = \
        [
            ("unregister_function", ObjectPathUnregisterFunction),
            ("message_function", ObjectPathMessageFunction),
            ("internal_pad1", ct.CFUNCTYPE(None, ct.c_void_p)),
            ("internal_pad2", ct.CFUNCTYPE(None, ct.c_void_p)),
            ("internal_pad3", ct.CFUNCTYPE(None, ct.c_void_p)),
            ("internal_pad4", ct.CFUNCTYPE(None, ct.c_void_p)),
        ]

    # from dbus-pending-call.h:
    TIMEOUT_INFINITE = 0x7fffffff
    TIMEOUT_USE_DEFAULT = -1

    # from dbus-message.h:
    class MessageIter(ct.Structure) :
        "contains no public fields."
        _fields_ = \
            [
                ("dummy1", ct.c_void_p),
                ("dummy2", ct.c_void_p),
                ("dummy3", ct.c_uint),
                ("dummy4", ct.c_int),
                ("dummy5", ct.c_int),
                ("dummy6", ct.c_int),
                ("dummy7", ct.c_int),
                ("dummy8", ct.c_int),
                ("dummy9", ct.c_int),
                ("dummy10", ct.c_int),
                ("dummy11", ct.c_int),
                ("pad1", ct.c_int),
                ("pad2", ct.c_void_p),
                ("pad3", ct.c_void_p),
            ]
    #end MessageIter
    MessageIterPtr = ct.POINTER(MessageIter)

#end DBUS

def _load_libdbus() :
    lib = ct.cdll.LoadLibrary(LIBDBUS_NAME)
    c_void_p = ct.c_void_p
    c_char_p = ct.c_char_p
    c_int = ct.c_int
    c_uint = ct.c_uint
    bool_t = DBUS.bool_t
    ErrorPtr = DBUS.ErrorPtr
    IterPtr = DBUS.MessageIterPtr
    for name, restype, argtypes in \
        (
            ("dbus_get_version", None, (ct.POINTER(c_int), ct.POINTER(c_int), ct.POINTER(c_int))),
            ("dbus_free", None, (c_void_p,)),
            ("dbus_error_init", None, (ErrorPtr,)),
            ("dbus_error_free", None, (ErrorPtr,)),
            ("dbus_error_is_set", bool_t, (ErrorPtr,)),
            ("dbus_bus_get_private", c_void_p, (DBUS.BusType, ErrorPtr)),
            ("dbus_bus_register", bool_t, (c_void_p, ErrorPtr)),
            ("dbus_bus_get_unique_name", c_char_p, (c_void_p,)),
            ("dbus_connection_open_private", c_void_p, (c_char_p, ErrorPtr)),
            ("dbus_connection_ref", c_void_p, (c_void_p,)),
            ("dbus_connection_unref", None, (c_void_p,)),
            ("dbus_connection_close", None, (c_void_p,)),
            ("dbus_connection_get_is_connected", bool_t, (c_void_p,)),
            ("dbus_connection_set_exit_on_disconnect", None, (c_void_p, bool_t)),
            ("dbus_connection_send", bool_t, (c_void_p, c_void_p, ct.POINTER(c_uint))),
            ("dbus_connection_send_with_reply", bool_t, (c_void_p, c_void_p, c_void_p, c_int)),
            ("dbus_connection_flush", None, (c_void_p,)),
            ("dbus_connection_get_dispatch_status", c_uint, (c_void_p,)),
            ("dbus_connection_dispatch", c_uint, (c_void_p,)),
            ("dbus_connection_set_watch_functions", bool_t, (c_void_p, c_void_p, c_void_p, c_void_p, c_void_p, c_void_p)),
            ("dbus_connection_set_timeout_functions", bool_t, (c_void_p, c_void_p, c_void_p, c_void_p, c_void_p, c_void_p)),
            ("dbus_connection_add_filter", bool_t, (c_void_p, c_void_p, c_void_p, c_void_p)),
            ("dbus_connection_remove_filter", None, (c_void_p, c_void_p, c_void_p)),
            ("dbus_connection_try_register_object_path", bool_t, (c_void_p, c_char_p, ct.POINTER(DBUS.ObjectPathVTable), c_void_p, ErrorPtr)),
            ("dbus_connection_unregister_object_path", bool_t, (c_void_p, c_char_p)),
            ("dbus_watch_get_unix_fd", c_int, (c_void_p,)),
            ("dbus_watch_get_flags", c_uint, (c_void_p,)),
            ("dbus_watch_handle", bool_t, (c_void_p, c_uint)),
            ("dbus_watch_get_enabled", bool_t, (c_void_p,)),
            ("dbus_timeout_get_interval", c_int, (c_void_p,)),
            ("dbus_timeout_handle", bool_t, (c_void_p,)),
            ("dbus_timeout_get_enabled", bool_t, (c_void_p,)),
            ("dbus_message_new_method_call", c_void_p, (c_char_p, c_char_p, c_char_p, c_char_p)),
            ("dbus_message_new_method_return", c_void_p, (c_void_p,)),
            ("dbus_message_new_error", c_void_p, (c_void_p, c_char_p, c_char_p)),
            ("dbus_message_new_signal", c_void_p, (c_char_p, c_char_p, c_char_p)),
            ("dbus_message_ref", c_void_p, (c_void_p,)),
            ("dbus_message_unref", None, (c_void_p,)),
            ("dbus_message_get_type", c_int, (c_void_p,)),
            ("dbus_message_get_path", c_char_p, (c_void_p,)),
            ("dbus_message_get_interface", c_char_p, (c_void_p,)),
            ("dbus_message_get_member", c_char_p, (c_void_p,)),
            ("dbus_message_get_error_name", c_char_p, (c_void_p,)),
            ("dbus_message_get_destination", c_char_p, (c_void_p,)),
            ("dbus_message_get_sender", c_char_p, (c_void_p,)),
            ("dbus_message_get_signature", c_char_p, (c_void_p,)),
            ("dbus_message_get_serial", ct.c_uint32, (c_void_p,)),
            ("dbus_message_get_reply_serial", ct.c_uint32, (c_void_p,)),
            ("dbus_message_get_no_reply", bool_t, (c_void_p,)),
            ("dbus_message_set_no_reply", None, (c_void_p, bool_t)),
            ("dbus_message_iter_init", bool_t, (c_void_p, IterPtr)),
            ("dbus_message_iter_init_append", None, (c_void_p, IterPtr)),
            ("dbus_message_iter_next", bool_t, (IterPtr,)),
            ("dbus_message_iter_get_arg_type", c_int, (IterPtr,)),
            ("dbus_message_iter_get_element_type", c_int, (IterPtr,)),
            ("dbus_message_iter_recurse", None, (IterPtr, IterPtr)),
            ("dbus_message_iter_get_signature", c_void_p, (IterPtr,)),
            ("dbus_message_iter_get_basic", None, (IterPtr, c_void_p)),
            ("dbus_message_iter_append_basic", bool_t, (IterPtr, c_int, c_void_p)),
            ("dbus_message_iter_open_container", bool_t, (IterPtr, c_int, c_char_p, IterPtr)),
            ("dbus_message_iter_close_container", bool_t, (IterPtr, IterPtr)),
            ("dbus_message_iter_abandon_container", None, (IterPtr, IterPtr)),
            ("dbus_pending_call_ref", c_void_p, (c_void_p,)),
            ("dbus_pending_call_unref", None, (c_void_p,)),
            ("dbus_pending_call_set_notify", bool_t, (c_void_p, c_void_p, c_void_p, c_void_p)),
            ("dbus_pending_call_cancel", None, (c_void_p,)),
            ("dbus_pending_call_get_completed", bool_t, (c_void_p,)),
            ("dbus_pending_call_steal_reply", c_void_p, (c_void_p,)),
        ) \
    :
        routine = getattr(lib, name)
        routine.restype = restype
        routine.argtypes = argtypes
    #end for
    logger.debug("loaded %s", LIBDBUS_NAME)
    return \
        lib
#end _load_libdbus

#+
# Exceptions
#-

class DBusError(Exception) :
    "for raising an exception that reports a D-Bus error name and accompanying message."

    def __init__(self, name, message) :
        self.name = name
        self.message = message
        self.args = ("%s -- %s" % (name, message),)
    #end __init__

#end DBusError

class DBusFailure(DBusError) :
    "used for reporting general libdbus call failures."

    def __init__(self, message) :
        super().__init__(DBUS.ERROR_FAILED, message)
    #end __init__

#end DBusFailure

class CorruptMessage(DBusFailure) :
    "a message argument list contained an invalid or unrecognized type code." \
    " This is a protocol integrity violation, and the connection it arrived on" \
    " cannot be trusted any further."
#end CorruptMessage

class ShapeError(TypeError) :
    "a value was asked for as a shape it does not have."
#end ShapeError

#+
# Signatures
#-

_basic_codes = "ybnqiuxtdsogh"
_object_path_re = re.compile(r"^/$|^(/[A-Za-z0-9_]+)+$")

def is_basic_type(typecode) :
    "is typecode (character or integer) one of the basic types."
    if isinstance(typecode, int) :
        typecode = chr(typecode)
    #end if
    return \
        len(typecode) == 1 and typecode in _basic_codes
#end is_basic_type

def is_container_type(typecode) :
    "is typecode (character or integer) one of the container types."
    if isinstance(typecode, int) :
        typecode = chr(typecode)
    #end if
    return \
        len(typecode) == 1 and typecode in "av(){}re"
#end is_container_type

def _complete_type_end(signature, pos, array_depth, struct_depth) :
    # returns the index just past the single complete type starting at
    # signature[pos], raising ValueError if there is none there.
    if pos >= len(signature) :
        raise ValueError("incomplete type at end of signature %s" % repr(signature))
    #end if
    code = signature[pos]
    if code in _basic_codes or code == "v" :
        end = pos + 1
    elif code == "a" :
        if array_depth == DBUS.MAXIMUM_TYPE_RECURSION_DEPTH :
            raise ValueError("too many nested arrays in signature %s" % repr(signature))
        #end if
        if signature[pos + 1 : pos + 2] == "{" :
            if struct_depth == DBUS.MAXIMUM_TYPE_RECURSION_DEPTH :
                raise ValueError("too many nested dict entries in signature %s" % repr(signature))
            #end if
            keypos = pos + 2
            if keypos >= len(signature) or signature[keypos] not in _basic_codes :
                raise ValueError("dict entry key must be a basic type in signature %s" % repr(signature))
            #end if
            end = _complete_type_end(signature, keypos + 1, array_depth + 1, struct_depth + 1)
            if signature[end : end + 1] != "}" :
                raise ValueError("dict entry must have exactly two fields in signature %s" % repr(signature))
            #end if
            end += 1
        else :
            end = _complete_type_end(signature, pos + 1, array_depth + 1, struct_depth)
        #end if
    elif code == "(" :
        if struct_depth == DBUS.MAXIMUM_TYPE_RECURSION_DEPTH :
            raise ValueError("too many nested structs in signature %s" % repr(signature))
        #end if
        end = pos + 1
        if signature[end : end + 1] == ")" :
            raise ValueError("empty struct in signature %s" % repr(signature))
        #end if
        while True :
            if end >= len(signature) :
                raise ValueError("unterminated struct in signature %s" % repr(signature))
            #end if
            if signature[end] == ")" :
                break
            #end if
            end = _complete_type_end(signature, end, array_depth, struct_depth + 1)
        #end while
        end += 1
    elif code == "{" :
        raise ValueError("dict entry outside array in signature %s" % repr(signature))
    else :
        raise ValueError("unexpected %s in signature %s" % (repr(code), repr(signature)))
    #end if
    return \
        end
#end _complete_type_end

def parse_signature(signature) :
    "splits signature into a list of single complete types, raising ValueError" \
    " if it is not a valid sequence of zero or more complete types."
    if isinstance(signature, bytes) :
        signature = signature.decode()
    #end if
    if len(signature) > DBUS.MAXIMUM_SIGNATURE_LENGTH :
        raise ValueError("signature longer than %d characters" % DBUS.MAXIMUM_SIGNATURE_LENGTH)
    #end if
    result = []
    pos = 0
    while pos < len(signature) :
        end = _complete_type_end(signature, pos, 0, 0)
        result.append(signature[pos:end])
        pos = end
    #end while
    return \
        result
#end parse_signature

def signature_validate_single(signature) :
    "is signature exactly one valid complete type."
    try :
        result = len(parse_signature(signature)) == 1
    except ValueError :
        result = False
    #end try
    return \
        result
#end signature_validate_single

#+
# Wire value model
#-

class WireValue :
    "base class for every value that can cross the bus. Each subclass corresponds" \
    " to one D-Bus type; the signature property gives the type signature of the" \
    " value, derived from its class and (for containers) its contents.\n" \
    "\n" \
    "The as_xxx methods are the typed-extraction API: each returns the value in" \
    " the requested shape, or raises ShapeError if the value does not have that" \
    " shape. unwrap() recursively converts to plain Python objects."

    __slots__ = () # to forestall typos

    type_code = DBUS.TYPE_INVALID

    @property
    def signature(self) :
        return \
            chr(self.type_code)
    #end signature

    def unwrap(self) :
        raise NotImplementedError("subclass must implement unwrap")
    #end unwrap

    def _wrong_shape(self, wanted) :
        raise ShapeError("%s value cannot be extracted as %s" % (repr(self.signature), wanted))
    #end _wrong_shape

    def as_bool(self) :
        self._wrong_shape("bool")
    #end as_bool

    def as_int(self) :
        self._wrong_shape("int")
    #end as_int

    def as_float(self) :
        self._wrong_shape("float")
    #end as_float

    def as_str(self) :
        self._wrong_shape("str")
    #end as_str

    def as_list(self) :
        self._wrong_shape("list")
    #end as_list

    def as_dict(self) :
        self._wrong_shape("dict")
    #end as_dict

    def as_tuple(self) :
        self._wrong_shape("tuple")
    #end as_tuple

#end WireValue

class _BasicValue(WireValue) :
    # common behaviour for values of basic (non-container) types.

    __slots__ = ("value",)

    def __init__(self, value) :
        self.value = self._convert(value)
    #end __init__

    def _convert(self, value) :
        return \
            value
    #end _convert

    def __eq__(self, other) :
        return \
            type(other) == type(self) and other.value == self.value
    #end __eq__

    def __hash__(self) :
        return \
            hash((self.type_code, self.value))
    #end __hash__

    def __repr__(self) :
        return \
            "%s(%s)" % (type(self).__name__, repr(self.value))
    #end __repr__

    def unwrap(self) :
        return \
            self.value
    #end unwrap

#end _BasicValue

class _IntegerValue(_BasicValue) :

    __slots__ = ()

    def _convert(self, value) :
        if not isinstance(value, int) :
            raise TypeError("integer expected for %s, got %s" % (type(self).__name__, repr(value)))
        #end if
        bits, signed = DBUS.int_ranges[self.type_code]
        return \
            DBUS.int_subtype(int(value), bits, signed)
    #end _convert

    def as_int(self) :
        return \
            self.value
    #end as_int

#end _IntegerValue

class Byte(_IntegerValue) :
    "an 8-bit unsigned integer."
    __slots__ = ()
    type_code = DBUS.TYPE_BYTE
#end Byte

class Int16(_IntegerValue) :
    __slots__ = ()
    type_code = DBUS.TYPE_INT16
#end Int16

class UInt16(_IntegerValue) :
    __slots__ = ()
    type_code = DBUS.TYPE_UINT16
#end UInt16

class Int32(_IntegerValue) :
    __slots__ = ()
    type_code = DBUS.TYPE_INT32
#end Int32

class UInt32(_IntegerValue) :
    __slots__ = ()
    type_code = DBUS.TYPE_UINT32
#end UInt32

class Int64(_IntegerValue) :
    __slots__ = ()
    type_code = DBUS.TYPE_INT64
#end Int64

class UInt64(_IntegerValue) :
    __slots__ = ()
    type_code = DBUS.TYPE_UINT64
#end UInt64

class Boolean(_BasicValue) :

    __slots__ = ()

    type_code = DBUS.TYPE_BOOLEAN

    def _convert(self, value) :
        if not isinstance(value, int) or value not in (0, 1) :
            raise ValueError("boolean value must be True/False or 1/0, not %s" % repr(value))
        #end if
        return \
            bool(value)
    #end _convert

    def as_bool(self) :
        return \
            self.value
    #end as_bool

#end Boolean

class Double(_BasicValue) :

    __slots__ = ()

    type_code = DBUS.TYPE_DOUBLE

    def _convert(self, value) :
        if isinstance(value, bool) or not isinstance(value, (int, float)) :
            raise TypeError("number expected for Double, got %s" % repr(value))
        #end if
        return \
            float(value)
    #end _convert

    def as_float(self) :
        return \
            self.value
    #end as_float

#end Double

class String(_BasicValue) :

    __slots__ = ()

    type_code = DBUS.TYPE_STRING

    def _convert(self, value) :
        if not isinstance(value, str) :
            raise TypeError("str expected for %s, got %s" % (type(self).__name__, repr(value)))
        #end if
        if "\x00" in value :
            raise ValueError("D-Bus strings cannot contain nul characters")
        #end if
        return \
            str(value)
    #end _convert

    def as_str(self) :
        return \
            self.value
    #end as_str

#end String

class ObjectPath(String) :
    "an object path string."

    __slots__ = ()

    type_code = DBUS.TYPE_OBJECT_PATH

    def _convert(self, value) :
        value = super()._convert(value)
        if _object_path_re.match(value) == None :
            raise ValueError("invalid object path %s" % repr(value))
        #end if
        return \
            value
    #end _convert

#end ObjectPath

class Signature(String) :
    "a type-signature string."

    __slots__ = ()

    type_code = DBUS.TYPE_SIGNATURE

    def _convert(self, value) :
        value = super()._convert(value)
        parse_signature(value) # just to validate
        return \
            value
    #end _convert

#end Signature

class UnixFD(_IntegerValue) :
    "a file descriptor. One decoded from a libdbus message is a duplicate made by" \
    " libdbus for the receiver: the caller owns it and must close it when done.\n" \
    "\n" \
    "Encoding passes the descriptor number to the message, which makes its own" \
    " duplicate; the original stays open and owned by the caller."

    __slots__ = ()

    type_code = DBUS.TYPE_UNIX_FD

    def _convert(self, value) :
        if isinstance(value, bool) or not isinstance(value, int) or value < 0 :
            raise ValueError("invalid file descriptor %s" % repr(value))
        #end if
        return \
            DBUS.int_subtype(value, 32, True)
    #end _convert

#end UnixFD

basic_classes = \
    {
        DBUS.TYPE_BYTE : Byte,
        DBUS.TYPE_BOOLEAN : Boolean,
        DBUS.TYPE_INT16 : Int16,
        DBUS.TYPE_UINT16 : UInt16,
        DBUS.TYPE_INT32 : Int32,
        DBUS.TYPE_UINT32 : UInt32,
        DBUS.TYPE_INT64 : Int64,
        DBUS.TYPE_UINT64 : UInt64,
        DBUS.TYPE_DOUBLE : Double,
        DBUS.TYPE_STRING : String,
        DBUS.TYPE_OBJECT_PATH : ObjectPath,
        DBUS.TYPE_SIGNATURE : Signature,
        DBUS.TYPE_UNIX_FD : UnixFD,
    }

def _check_wire_value(value) :
    if not isinstance(value, WireValue) :
        raise TypeError("WireValue expected, got %s" % repr(value))
    #end if
#end _check_wire_value

class Array(WireValue) :
    "a homogeneous sequence of values. The element signature is kept separately" \
    " from the items, so that an empty array still has a complete type. An array" \
    " whose elements are DictEntry values is the wire form of a dictionary; use" \
    " as_dict() to collapse it into a mapping."

    __slots__ = ("element_signature", "items")

    type_code = DBUS.TYPE_ARRAY

    def __init__(self, element_signature, items = ()) :
        if not signature_validate_single("a" + element_signature) :
            raise ValueError("invalid array element signature %s" % repr(element_signature))
        #end if
        items = list(items)
        for item in items :
            _check_wire_value(item)
            if item.signature != element_signature :
                raise TypeError \
                  (
                        "array element of type %s does not match element signature %s"
                    %
                        (repr(item.signature), repr(element_signature))
                  )
            #end if
        #end for
        self.element_signature = element_signature
        self.items = items
    #end __init__

    @property
    def signature(self) :
        return \
            "a" + self.element_signature
    #end signature

    @property
    def is_dict(self) :
        "is this the wire form of a dictionary."
        return \
            self.element_signature.startswith("{")
    #end is_dict

    def __len__(self) :
        return \
            len(self.items)
    #end __len__

    def __iter__(self) :
        return \
            iter(self.items)
    #end __iter__

    def __eq__(self, other) :
        return \
            (
                type(other) == type(self)
            and
                other.element_signature == self.element_signature
            and
                other.items == self.items
            )
    #end __eq__

    __hash__ = None

    def __repr__(self) :
        return \
            "Array(%s, %s)" % (repr(self.element_signature), repr(self.items))
    #end __repr__

    def as_list(self) :
        return \
            list(self.items)
    #end as_list

    def as_dict(self) :
        # duplicate keys: last one wins
        if not self.is_dict :
            self._wrong_shape("dict")
        #end if
        result = {}
        for entry in self.items :
            result[entry.key.unwrap()] = entry.value
        #end for
        return \
            result
    #end as_dict

    def unwrap(self) :
        if self.is_dict :
            result = dict((k, v.unwrap()) for k, v in self.as_dict().items())
        else :
            result = list(item.unwrap() for item in self.items)
        #end if
        return \
            result
    #end unwrap

#end Array

class Struct(WireValue) :
    "an ordered, fixed-length sequence of fields of arbitrary types."

    __slots__ = ("fields",)

    type_code = DBUS.TYPE_STRUCT

    def __init__(self, fields) :
        fields = tuple(fields)
        if len(fields) == 0 :
            raise ValueError("struct must have at least one field")
        #end if
        for field in fields :
            _check_wire_value(field)
        #end for
        self.fields = fields
    #end __init__

    @property
    def signature(self) :
        return \
            "(" + "".join(f.signature for f in self.fields) + ")"
    #end signature

    def __eq__(self, other) :
        return \
            type(other) == type(self) and other.fields == self.fields
    #end __eq__

    __hash__ = None

    def __repr__(self) :
        return \
            "Struct(%s)" % repr(list(self.fields))
    #end __repr__

    def as_tuple(self) :
        return \
            self.fields
    #end as_tuple

    def as_list(self) :
        return \
            list(self.fields)
    #end as_list

    def unwrap(self) :
        return \
            tuple(f.unwrap() for f in self.fields)
    #end unwrap

#end Struct

class DictEntry(WireValue) :
    "a key/value pair; only ever occurs as the element of an Array."

    __slots__ = ("key", "value")

    type_code = DBUS.TYPE_DICT_ENTRY

    def __init__(self, key, value) :
        _check_wire_value(key)
        _check_wire_value(value)
        if not isinstance(key, _BasicValue) :
            raise TypeError("dict entry key must be a basic type, not %s" % repr(key.signature))
        #end if
        self.key = key
        self.value = value
    #end __init__

    @property
    def signature(self) :
        return \
            "{" + self.key.signature + self.value.signature + "}"
    #end signature

    def __eq__(self, other) :
        return \
            type(other) == type(self) and other.key == self.key and other.value == self.value
    #end __eq__

    __hash__ = None

    def __repr__(self) :
        return \
            "DictEntry(%s, %s)" % (repr(self.key), repr(self.value))
    #end __repr__

    def as_tuple(self) :
        return \
            (self.key, self.value)
    #end as_tuple

    def unwrap(self) :
        return \
            (self.key.unwrap(), self.value.unwrap())
    #end unwrap

#end DictEntry

class Variant(WireValue) :
    "a value that carries its own type signature."

    __slots__ = ("inner",)

    type_code = DBUS.TYPE_VARIANT

    def __init__(self, inner) :
        _check_wire_value(inner)
        if isinstance(inner, DictEntry) :
            raise TypeError("variant cannot directly contain a dict entry")
        #end if
        self.inner = inner
    #end __init__

    @property
    def inner_signature(self) :
        return \
            self.inner.signature
    #end inner_signature

    def __eq__(self, other) :
        return \
            type(other) == type(self) and other.inner == self.inner
    #end __eq__

    __hash__ = None

    def __repr__(self) :
        return \
            "Variant(%s)" % repr(self.inner)
    #end __repr__

    # typed extraction looks through the variant

    def as_bool(self) :
        return \
            self.inner.as_bool()
    #end as_bool

    def as_int(self) :
        return \
            self.inner.as_int()
    #end as_int

    def as_float(self) :
        return \
            self.inner.as_float()
    #end as_float

    def as_str(self) :
        return \
            self.inner.as_str()
    #end as_str

    def as_list(self) :
        return \
            self.inner.as_list()
    #end as_list

    def as_dict(self) :
        return \
            self.inner.as_dict()
    #end as_dict

    def as_tuple(self) :
        return \
            self.inner.as_tuple()
    #end as_tuple

    def unwrap(self) :
        return \
            self.inner.unwrap()
    #end unwrap

#end Variant

def signature_of(values) :
    "the concatenated signature of a sequence of WireValues."
    return \
        "".join(v.signature for v in values)
#end signature_of

#+
# Conversion from native Python values
#-

def _infer(value) :
    # works out a WireValue for value from its Python type alone.
    if isinstance(value, WireValue) :
        result = value
    elif isinstance(value, bool) :
        result = Boolean(value)
    elif isinstance(value, int) :
        if -1 << 31 <= value < 1 << 31 :
            result = Int32(value)
        elif -1 << 63 <= value < 1 << 63 :
            result = Int64(value)
        else :
            result = UInt64(value)
        #end if
    elif isinstance(value, float) :
        result = Double(value)
    elif isinstance(value, str) :
        result = String(value)
    elif isinstance(value, (bytes, bytearray)) :
        result = Array("y", (Byte(b) for b in value))
    elif isinstance(value, tuple) :
        result = Struct(_infer(v) for v in value)
    elif isinstance(value, list) :
        if len(value) == 0 :
            raise TypeError("cannot infer element type of empty list; give a signature")
        #end if
        items = list(_infer(v) for v in value)
        element_signature = items[0].signature
        if any(item.signature != element_signature for item in items) :
            raise TypeError("list elements do not all have the same type")
        #end if
        result = Array(element_signature, items)
    elif isinstance(value, Mapping) :
        if len(value) == 0 :
            raise TypeError("cannot infer key and value types of empty dict; give a signature")
        #end if
        entries = list(DictEntry(_infer(k), _infer(v)) for k, v in value.items())
        element_signature = entries[0].signature
        if any(entry.signature != element_signature for entry in entries) :
            raise TypeError("dict keys or values do not all have the same type")
        #end if
        result = Array(element_signature, entries)
    else :
        raise TypeError("cannot convert %s to a D-Bus value" % repr(value))
    #end if
    return \
        result
#end _infer

def _convert(value, signature) :
    # converts value according to the single complete type signature.
    code = signature[0]
    if code == "v" :
        if isinstance(value, Variant) :
            result = value
        else :
            result = Variant(_infer(value))
        #end if
    elif isinstance(value, WireValue) :
        if value.signature != signature :
            raise TypeError \
              (
                "value of type %s given where %s expected" % (repr(value.signature), repr(signature))
              )
        #end if
        result = value
    elif code in _basic_codes :
        result = basic_classes[ord(code)](value)
    elif code == "a" :
        element_signature = signature[1:]
        if element_signature.startswith("{") :
            if not isinstance(value, Mapping) :
                raise TypeError("dict expected for %s, got %s" % (repr(signature), repr(value)))
            #end if
            keysig, valuesig = parse_signature(element_signature[1:-1])
            keys = list(value)
            try :
                keys.sort() # might as well insert in some kind of predictable order
            except TypeError :
                pass # keys not mutually orderable, keep mapping order
            #end try
            entries = []
            for key in keys :
                entries.append(DictEntry(_convert(key, keysig), _convert(value[key], valuesig)))
            #end for
            result = Array(element_signature, entries)
        else :
            if isinstance(value, (str, Mapping)) or not hasattr(value, "__iter__") :
                raise TypeError("sequence expected for %s, got %s" % (repr(signature), repr(value)))
            #end if
            result = Array(element_signature, (_convert(v, element_signature) for v in value))
        #end if
    elif code == "(" :
        fieldsigs = parse_signature(signature[1:-1])
        if not isinstance(value, (tuple, list)) or len(value) != len(fieldsigs) :
            raise TypeError \
              (
                "sequence of %d elements expected for %s" % (len(fieldsigs), repr(signature))
              )
        #end if
        result = Struct(_convert(v, s) for v, s in zip(value, fieldsigs))
    else :
        raise ValueError("unexpected type %s" % repr(signature))
    #end if
    return \
        result
#end _convert

def to_wire(value, signature = None) :
    "converts native Python value to a WireValue, according to signature (a single" \
    " complete type) if specified, otherwise inferring the type from the value."
    if signature != None :
        sigs = parse_signature(signature)
        if len(sigs) != 1 :
            raise ValueError("signature %s is not a single complete type" % repr(signature))
        #end if
        result = _convert(value, sigs[0])
    else :
        result = _infer(value)
    #end if
    return \
        result
#end to_wire

def to_wire_args(values, signature = None) :
    "converts a sequence of native values to a list of WireValues, one per" \
    " complete type in signature if specified."
    values = list(values)
    if signature != None :
        sigs = parse_signature(signature)
        if len(sigs) != len(values) :
            raise TypeError \
              (
                "signature %s needs %d values, %d given" % (repr(signature), len(sigs), len(values))
              )
        #end if
        result = list(_convert(v, s) for v, s in zip(values, sigs))
    else :
        result = list(_infer(v) for v in values)
    #end if
    return \
        result
#end to_wire_args

#+
# Match rules
#-

def format_rule(rule) :
    "constructs a match-rule string from a mapping of keys to values. Entries" \
    " whose value is None are left out; apostrophes within values are escaped."
    items = []
    for key, value in rule.items() :
        if value != None :
            items.append("%s='%s'" % (key, str(value).replace("'", "'\\''")))
        #end if
    #end for
    return \
        ",".join(items)
#end format_rule

def unformat_rule(rule) :
    "parses a match-rule string into a dict of keys and values, the inverse of" \
    " format_rule."
    result = {}
    pos = 0
    while pos < len(rule) :
        eq = rule.find("=", pos)
        if eq < 0 :
            raise ValueError("missing “=” in match rule %s" % repr(rule))
        #end if
        key = rule[pos:eq].strip()
        if key == "" or "," in key :
            raise ValueError("missing key in match rule %s" % repr(rule))
        #end if
        if key in result :
            raise ValueError("duplicate key %s in match rule %s" % (repr(key), repr(rule)))
        #end if
        pos = eq + 1
        value = []
        quoted = False
        while pos < len(rule) :
            ch = rule[pos]
            if quoted :
                if ch == "'" :
                    quoted = False
                else :
                    value.append(ch)
                #end if
            elif ch == "'" :
                quoted = True
            elif ch == "\\" and rule[pos + 1 : pos + 2] == "'" :
                value.append("'")
                pos += 1
            elif ch == "," :
                break
            else :
                value.append(ch)
            #end if
            pos += 1
        #end while
        if quoted :
            raise ValueError("unterminated quote in match rule %s" % repr(rule))
        #end if
        result[key] = "".join(value)
        pos += 1 # skip comma
    #end while
    return \
        result
#end unformat_rule

#+
# Marshaler
#
# Works with any argument cursor offering the Message.Iter interface:
# arg_type, element_type, signature, basic, recurse() and advance() for
# reading; append_basic(), open_container(), close() and abandon() for
# appending.
#-

def encode(value, appenditer) :
    "appends WireValue value to the argument list being written through appenditer," \
    " opening and closing nested containers as needed."
    _check_wire_value(value)
    code = value.type_code
    if code in basic_classes :
        appenditer.append_basic(code, value.value)
    else :
        if code == DBUS.TYPE_ARRAY :
            subiter = appenditer.open_container(code, value.element_signature)
            contents = value.items
        elif code == DBUS.TYPE_STRUCT :
            subiter = appenditer.open_container(code, None)
            contents = value.fields
        elif code == DBUS.TYPE_DICT_ENTRY :
            subiter = appenditer.open_container(code, None)
            contents = (value.key, value.value)
        elif code == DBUS.TYPE_VARIANT :
            subiter = appenditer.open_container(code, value.inner_signature)
            contents = (value.inner,)
        else :
            raise TypeError("cannot encode value of type %s" % repr(value.signature))
        #end if
        try :
            for item in contents :
                encode(item, subiter)
            #end for
        except Exception :
            subiter.abandon()
            raise
        #end try
        subiter.close()
    #end if
#end encode

def encode_args(values, appenditer) :
    "appends each of a sequence of WireValues to the argument list."
    for value in values :
        encode(value, appenditer)
    #end for
#end encode_args

def decode(iter) :
    "reads one complete value starting at the current position of the argument" \
    " cursor iter, returning it as a WireValue and leaving iter positioned after it." \
    " An unrecognized type code raises CorruptMessage."
    argtype = iter.arg_type
    if argtype in basic_classes :
        try :
            result = basic_classes[argtype](iter.basic)
        except (TypeError, ValueError) as err :
            raise CorruptMessage("bad %s value: %s" % (repr(chr(argtype)), err))
        #end try
    elif argtype == DBUS.TYPE_ARRAY :
        element_signature = iter.signature[1:]
        subiter = iter.recurse()
        items = []
        while subiter.arg_type != DBUS.TYPE_INVALID :
            items.append(decode(subiter))
        #end while
        try :
            result = Array(element_signature, items)
        except (TypeError, ValueError) as err :
            raise CorruptMessage("inconsistent array: %s" % err)
        #end try
    elif argtype == DBUS.TYPE_STRUCT :
        subiter = iter.recurse()
        fields = []
        while subiter.arg_type != DBUS.TYPE_INVALID :
            fields.append(decode(subiter))
        #end while
        if len(fields) == 0 :
            raise CorruptMessage("empty struct")
        #end if
        result = Struct(fields)
    elif argtype == DBUS.TYPE_DICT_ENTRY :
        subiter = iter.recurse()
        fields = []
        while subiter.arg_type != DBUS.TYPE_INVALID :
            fields.append(decode(subiter))
        #end while
        if len(fields) != 2 or not isinstance(fields[0], _BasicValue) :
            raise CorruptMessage("malformed dict entry")
        #end if
        result = DictEntry(fields[0], fields[1])
    elif argtype == DBUS.TYPE_VARIANT :
        subiter = iter.recurse()
        if subiter.arg_type == DBUS.TYPE_INVALID :
            raise CorruptMessage("empty variant")
        #end if
        result = Variant(decode(subiter))
    else :
        raise CorruptMessage("unrecognized argument type %d" % argtype)
    #end if
    iter.advance()
    return \
        result
#end decode

def decode_args(iter) :
    "decodes every remaining argument from iter, stopping cleanly at the end of" \
    " the argument list."
    result = []
    while iter.arg_type != DBUS.TYPE_INVALID :
        result.append(decode(iter))
    #end while
    return \
        result
#end decode_args

#+
# libdbus wrappers
#-

def _get_timeout(timeout) :
    # converts a timeout in float seconds to integer milliseconds, passing
    # the special TIMEOUT_xxx values through unchanged.
    if not isinstance(timeout, int) or timeout not in (DBUS.TIMEOUT_INFINITE, DBUS.TIMEOUT_USE_DEFAULT) :
        timeout = round(timeout * 1000)
    #end if
    return \
        timeout
#end _get_timeout

def _decode_str(c_str) :
    if c_str != None :
        c_str = c_str.decode()
    #end if
    return \
        c_str
#end _decode_str

def _encode_str(s) :
    if s != None :
        s = s.encode()
    #end if
    return \
        s
#end _encode_str

class Error :
    "wrapper around a DBusError object."
    # <https://dbus.freedesktop.org/doc/api/html/group__DBusErrors.html>

    __slots__ = ("_dbobj",) # to forestall typos

    def __init__(self) :
        dbobj = DBUS.Error()
        dbus.dbus_error_init(dbobj)
        self._dbobj = dbobj
    #end __init__

    def __del__(self) :
        if self._dbobj != None :
            dbus.dbus_error_free(self._dbobj)
            self._dbobj = None
        #end if
    #end __del__

    @property
    def is_set(self) :
        return \
            dbus.dbus_error_is_set(self._dbobj) != 0
    #end is_set

    @property
    def name(self) :
        return \
            _decode_str(self._dbobj.name)
    #end name

    @property
    def message(self) :
        return \
            _decode_str(self._dbobj.message)
    #end message

    def raise_if_set(self, exc_class = DBusError) :
        if self.is_set :
            raise exc_class(self.name, self.message)
        #end if
    #end raise_if_set

#end Error

class Watch :
    "wrapper around a DBusWatch object. Do not instantiate directly; they are" \
    " created and destroyed by libdbus, which passes them to the add-watch and" \
    " remove-watch callbacks attached to a Connection.\n" \
    "\n" \
    "Check the enabled property to decide whether to pay attention to this Watch," \
    " and the flags to see whether to wait for reads, writes or both. Call handle()" \
    " with the corresponding flags when the file descriptor becomes ready."
    # <https://dbus.freedesktop.org/doc/api/html/group__DBusWatch.html>

    __slots__ = ("__weakref__", "_dbobj",) # to forestall typos

    _instances = WeakValueDictionary()

    def __new__(celf, _dbobj) :
        self = celf._instances.get(_dbobj)
        if self == None :
            self = super().__new__(celf)
            self._dbobj = _dbobj
            celf._instances[_dbobj] = self
        #end if
        return \
            self
    #end __new__

    def fileno(self) :
        return \
            dbus.dbus_watch_get_unix_fd(self._dbobj)
    #end fileno

    @property
    def flags(self) :
        "WATCH_READABLE and/or WATCH_WRITABLE."
        return \
            dbus.dbus_watch_get_flags(self._dbobj)
    #end flags

    def handle(self, flags) :
        return \
            dbus.dbus_watch_handle(self._dbobj, flags) != 0
    #end handle

    @property
    def enabled(self) :
        return \
            dbus.dbus_watch_get_enabled(self._dbobj) != 0
    #end enabled

#end Watch

class Timeout :
    "wrapper around a DBusTimeout object. Do not instantiate directly; they are" \
    " created and destroyed by libdbus, which passes them to the add-timeout and" \
    " remove-timeout callbacks attached to a Connection. Call handle() each time" \
    " the interval elapses while the Timeout is enabled."
    # <https://dbus.freedesktop.org/doc/api/html/group__DBusTimeout.html>

    __slots__ = ("__weakref__", "_dbobj",) # to forestall typos

    _instances = WeakValueDictionary()

    def __new__(celf, _dbobj) :
        self = celf._instances.get(_dbobj)
        if self == None :
            self = super().__new__(celf)
            self._dbobj = _dbobj
            celf._instances[_dbobj] = self
        #end if
        return \
            self
    #end __new__

    @property
    def interval(self) :
        "float seconds between firings."
        return \
            dbus.dbus_timeout_get_interval(self._dbobj) / 1000
    #end interval

    def handle(self) :
        return \
            dbus.dbus_timeout_handle(self._dbobj) != 0
    #end handle

    @property
    def enabled(self) :
        return \
            dbus.dbus_timeout_get_enabled(self._dbobj) != 0
    #end enabled

#end Timeout

class ObjectPathVTable :
    "wrapper around an ObjectPathVTable struct, holding the message handler for" \
    " an object path registered on a Connection. The handler is invoked as\n" \
    "\n" \
    "    message(conn, message, user_data)\n" \
    "\n" \
    "and must return one of the DBUS.HANDLER_RESULT_xxx values."

    __slots__ = ("_dbobj", "_wrap_message_func") # to forestall typos

    def __init__(self, *, message) :

        def wrap_message(c_conn, c_message, c_user_data) :
            try :
                conn = Connection(dbus.dbus_connection_ref(c_conn))
                msg = Message(dbus.dbus_message_ref(c_message))
                result = message(conn, msg, conn._user_data.get(c_user_data))
            except Exception :
                logger.exception("object path message handler failed")
                result = DBUS.HANDLER_RESULT_NOT_YET_HANDLED
            #end try
            return \
                result
        #end wrap_message

    #begin __init__
        self._dbobj = DBUS.ObjectPathVTable()
        self._wrap_message_func = DBUS.ObjectPathMessageFunction(wrap_message)
        self._dbobj.message_function = self._wrap_message_func
    #end __init__

#end ObjectPathVTable

class Connection :
    "wrapper around a DBusConnection object. Do not instantiate directly; use the" \
    " bus_get or open methods."
    # <https://dbus.freedesktop.org/doc/api/html/group__DBusConnection.html>

    __slots__ = \
      (
        "__weakref__",
        "_dbobj",
        "_filters",
        "_user_data",
        "_object_paths",
        # need to keep references to ctypes-wrapped functions
        # so they don't disappear prematurely:
        "_add_watch_function",
        "_remove_watch_function",
        "_toggled_watch_function",
        "_add_timeout_function",
        "_remove_timeout_function",
        "_toggled_timeout_function",
      ) # to forestall typos

    _instances = WeakValueDictionary()

    def __new__(celf, _dbobj) :
        self = celf._instances.get(_dbobj)
        if self == None :
            self = super().__new__(celf)
            self._dbobj = _dbobj
            self._filters = {}
            self._user_data = {}
            self._object_paths = {}
            self._add_watch_function = None
            self._remove_watch_function = None
            self._toggled_watch_function = None
            self._add_timeout_function = None
            self._remove_timeout_function = None
            self._toggled_timeout_function = None
            celf._instances[_dbobj] = self
        else :
            dbus.dbus_connection_unref(self._dbobj)
              # lose extra reference created by caller
        #end if
        return \
            self
    #end __new__

    def __del__(self) :
        if self._dbobj != None :
            dbus.dbus_connection_unref(self._dbobj)
            self._dbobj = None
        #end if
    #end __del__

    @classmethod
    def bus_get(celf, type, private = True) :
        "opens a connection to one of the well-known buses; type is a DBUS.BUS_xxx" \
        " value. Only private connections are supported."
        assert private, "shared bus connections not supported"
        error = Error()
        result = dbus.dbus_bus_get_private(type, error._dbobj)
        error.raise_if_set()
        if result == None :
            raise DBusFailure("dbus_bus_get_private failed")
        #end if
        return \
            celf(result)
    #end bus_get

    @classmethod
    def open(celf, address, private = True) :
        "opens a connection to the bus at the given address, and registers with it."
        assert private, "shared bus connections not supported"
        error = Error()
        c_conn = dbus.dbus_connection_open_private(address.encode(), error._dbobj)
        error.raise_if_set()
        if c_conn == None :
            raise DBusFailure("dbus_connection_open_private failed")
        #end if
        result = celf(c_conn)
        error = Error()
        dbus.dbus_bus_register(result._dbobj, error._dbobj)
        if error.is_set :
            result.close()
            error.raise_if_set()
        #end if
        return \
            result
    #end open

    def close(self) :
        dbus.dbus_connection_close(self._dbobj)
    #end close

    @property
    def is_connected(self) :
        return \
            dbus.dbus_connection_get_is_connected(self._dbobj) != 0
    #end is_connected

    def set_exit_on_disconnect(self, exit_on_disconnect) :
        dbus.dbus_connection_set_exit_on_disconnect(self._dbobj, exit_on_disconnect)
    #end set_exit_on_disconnect

    @property
    def bus_unique_name(self) :
        return \
            _decode_str(dbus.dbus_bus_get_unique_name(self._dbobj))
    #end bus_unique_name

    def send(self, message) :
        "queues message for sending, returning its serial number."
        if not isinstance(message, Message) :
            raise TypeError("message must be a Message")
        #end if
        serial = ct.c_uint()
        if not dbus.dbus_connection_send(self._dbobj, message._dbobj, ct.byref(serial)) :
            raise DBusFailure("dbus_connection_send failed")
        #end if
        return \
            serial.value
    #end send

    def send_with_reply(self, message, timeout) :
        "queues message for sending, returning a PendingCall for the reply, or" \
        " None if the connection is already disconnected."
        if not isinstance(message, Message) :
            raise TypeError("message must be a Message")
        #end if
        pending_call = ct.c_void_p()
        if not dbus.dbus_connection_send_with_reply(self._dbobj, message._dbobj, ct.byref(pending_call), _get_timeout(timeout)) :
            raise DBusFailure("dbus_connection_send_with_reply failed")
        #end if
        if pending_call.value != None :
            result = PendingCall(pending_call.value)
        else :
            result = None
        #end if
        return \
            result
    #end send_with_reply

    def flush(self) :
        dbus.dbus_connection_flush(self._dbobj)
    #end flush

    @property
    def dispatch_status(self) :
        "returns a DISPATCH_XXX code."
        return \
            dbus.dbus_connection_get_dispatch_status(self._dbobj)
    #end dispatch_status

    def dispatch(self) :
        "processes at most one queued message, returning a DISPATCH_XXX code."
        return \
            dbus.dbus_connection_dispatch(self._dbobj)
    #end dispatch

    def set_watch_functions(self, add_function, remove_function, toggled_function, data) :
        "installs the callbacks that libdbus uses to tell the caller about file" \
        " descriptors to watch; pass None for all three to uninstall them."

        def wrap_add_function(c_watch, _data) :
            try :
                result = add_function(Watch(c_watch), data)
            except Exception :
                logger.exception("add-watch callback failed")
                result = False
            #end try
            return \
                result
        #end wrap_add_function

        def wrap_remove_function(c_watch, _data) :
            try :
                remove_function(Watch(c_watch), data)
            except Exception :
                logger.exception("remove-watch callback failed")
            #end try
        #end wrap_remove_function

        def wrap_toggled_function(c_watch, _data) :
            try :
                toggled_function(Watch(c_watch), data)
            except Exception :
                logger.exception("watch-toggled callback failed")
            #end try
        #end wrap_toggled_function

    #begin set_watch_functions
        if add_function != None :
            add_watch_function = DBUS.AddWatchFunction(wrap_add_function)
            remove_watch_function = DBUS.RemoveWatchFunction(wrap_remove_function)
            toggled_watch_function = DBUS.WatchToggledFunction(wrap_toggled_function)
        else :
            add_watch_function = None
            remove_watch_function = None
            toggled_watch_function = None
        #end if
        if not dbus.dbus_connection_set_watch_functions(self._dbobj, add_watch_function, remove_watch_function, toggled_watch_function, None, None) :
            raise DBusFailure("dbus_connection_set_watch_functions failed")
        #end if
        # only drop the old wrappers after libdbus has finished calling them
        self._add_watch_function = add_watch_function
        self._remove_watch_function = remove_watch_function
        self._toggled_watch_function = toggled_watch_function
    #end set_watch_functions

    def set_timeout_functions(self, add_function, remove_function, toggled_function, data) :
        "installs the callbacks that libdbus uses to tell the caller about timeouts" \
        " to schedule; pass None for all three to uninstall them."

        def wrap_add_function(c_timeout, _data) :
            try :
                result = add_function(Timeout(c_timeout), data)
            except Exception :
                logger.exception("add-timeout callback failed")
                result = False
            #end try
            return \
                result
        #end wrap_add_function

        def wrap_remove_function(c_timeout, _data) :
            try :
                remove_function(Timeout(c_timeout), data)
            except Exception :
                logger.exception("remove-timeout callback failed")
            #end try
        #end wrap_remove_function

        def wrap_toggled_function(c_timeout, _data) :
            try :
                toggled_function(Timeout(c_timeout), data)
            except Exception :
                logger.exception("timeout-toggled callback failed")
            #end try
        #end wrap_toggled_function

    #begin set_timeout_functions
        if add_function != None :
            add_timeout_function = DBUS.AddTimeoutFunction(wrap_add_function)
            remove_timeout_function = DBUS.RemoveTimeoutFunction(wrap_remove_function)
            toggled_timeout_function = DBUS.TimeoutToggledFunction(wrap_toggled_function)
        else :
            add_timeout_function = None
            remove_timeout_function = None
            toggled_timeout_function = None
        #end if
        if not dbus.dbus_connection_set_timeout_functions(self._dbobj, add_timeout_function, remove_timeout_function, toggled_timeout_function, None, None) :
            raise DBusFailure("dbus_connection_set_timeout_functions failed")
        #end if
        self._add_timeout_function = add_timeout_function
        self._remove_timeout_function = remove_timeout_function
        self._toggled_timeout_function = toggled_timeout_function
    #end set_timeout_functions

    def add_filter(self, function, user_data) :
        "installs a filter that sees every incoming message, invoked as\n" \
        "\n" \
        "    function(conn, message, user_data)\n" \
        "\n" \
        "and returning one of the DBUS.HANDLER_RESULT_xxx values."

        def wrap_function(c_conn, message, _data) :
            try :
                result = function(self, Message(dbus.dbus_message_ref(message)), user_data)
            except Exception :
                logger.exception("connection filter failed")
                result = DBUS.HANDLER_RESULT_NOT_YET_HANDLED
            #end try
            return \
                result
        #end wrap_function

    #begin add_filter
        filter_key = (function, id(user_data))
          # use id to allow non-hashable user_data
        c_function = DBUS.HandleMessageFunction(wrap_function)
        # pass user_data id because libdbus identifies filter entry by both function address and user data address
        if not dbus.dbus_connection_add_filter(self._dbobj, c_function, filter_key[1], None) :
            raise DBusFailure("dbus_connection_add_filter failed")
        #end if
        self._filters[filter_key] = c_function
          # need to ensure wrapped functions don’t disappear prematurely
    #end add_filter

    def remove_filter(self, function, user_data) :
        filter_key = (function, id(user_data))
        if filter_key not in self._filters :
            raise KeyError("removing nonexistent Connection filter")
        #end if
        dbus.dbus_connection_remove_filter(self._dbobj, self._filters[filter_key], filter_key[1])
        del self._filters[filter_key]
    #end remove_filter

    def register_object_path(self, path, vtable, user_data) :
        if not isinstance(vtable, ObjectPathVTable) :
            raise TypeError("vtable must be an ObjectPathVTable")
        #end if
        c_user_data = id(user_data)
        error = Error()
        dbus.dbus_connection_try_register_object_path(self._dbobj, path.encode(), ct.byref(vtable._dbobj), c_user_data, error._dbobj)
        error.raise_if_set()
        self._object_paths[path] = {"vtable" : vtable, "user_data" : user_data}
          # ensure it doesn’t disappear prematurely
        self._user_data[c_user_data] = user_data
    #end register_object_path

    def unregister_object_path(self, path) :
        if path not in self._object_paths :
            raise KeyError("unregistering unregistered path")
        #end if
        if not dbus.dbus_connection_unregister_object_path(self._dbobj, path.encode()) :
            raise DBusFailure("dbus_connection_unregister_object_path failed")
        #end if
        user_data = self._object_paths.pop(path)["user_data"]
        if not any(entry["user_data"] is user_data for entry in self._object_paths.values()) :
            self._user_data.pop(id(user_data), None)
        #end if
    #end unregister_object_path

#end Connection

class Message :
    "wrapper around a DBusMessage object. Do not instantiate directly; use one of" \
    " the new_xxx methods."
    # <https://dbus.freedesktop.org/doc/api/html/group__DBusMessage.html>

    __slots__ = ("__weakref__", "_dbobj") # to forestall typos

    _instances = WeakValueDictionary()

    def __new__(celf, _dbobj) :
        self = celf._instances.get(_dbobj)
        if self == None :
            self = super().__new__(celf)
            self._dbobj = _dbobj
            celf._instances[_dbobj] = self
        else :
            dbus.dbus_message_unref(self._dbobj)
              # lose extra reference created by caller
        #end if
        return \
            self
    #end __new__

    def __del__(self) :
        if self._dbobj != None :
            dbus.dbus_message_unref(self._dbobj)
            self._dbobj = None
        #end if
    #end __del__

    @classmethod
    def new_method_call(celf, destination, path, iface, method) :
        result = dbus.dbus_message_new_method_call \
          (
            _encode_str(destination),
            _encode_str(path),
            _encode_str(iface),
            _encode_str(method),
          )
        if result == None :
            raise DBusFailure("dbus_message_new_method_call failed")
        #end if
        return \
            celf(result)
    #end new_method_call

    @classmethod
    def new_signal(celf, path, iface, name) :
        result = dbus.dbus_message_new_signal(path.encode(), iface.encode(), name.encode())
        if result == None :
            raise DBusFailure("dbus_message_new_signal failed")
        #end if
        return \
            celf(result)
    #end new_signal

    def new_method_return(self) :
        result = dbus.dbus_message_new_method_return(self._dbobj)
        if result == None :
            raise DBusFailure("dbus_message_new_method_return failed")
        #end if
        return \
            type(self)(result)
    #end new_method_return

    def new_error(self, name, message) :
        result = dbus.dbus_message_new_error(self._dbobj, name.encode(), _encode_str(message))
        if result == None :
            raise DBusFailure("dbus_message_new_error failed")
        #end if
        return \
            type(self)(result)
    #end new_error

    @property
    def type(self) :
        "one of the DBUS.MESSAGE_TYPE_xxx codes."
        return \
            dbus.dbus_message_get_type(self._dbobj)
    #end type

    @property
    def path(self) :
        return \
            _decode_str(dbus.dbus_message_get_path(self._dbobj))
    #end path

    @property
    def interface(self) :
        return \
            _decode_str(dbus.dbus_message_get_interface(self._dbobj))
    #end interface

    @property
    def member(self) :
        return \
            _decode_str(dbus.dbus_message_get_member(self._dbobj))
    #end member

    @property
    def error_name(self) :
        return \
            _decode_str(dbus.dbus_message_get_error_name(self._dbobj))
    #end error_name

    @property
    def destination(self) :
        return \
            _decode_str(dbus.dbus_message_get_destination(self._dbobj))
    #end destination

    @property
    def sender(self) :
        return \
            _decode_str(dbus.dbus_message_get_sender(self._dbobj))
    #end sender

    @property
    def signature(self) :
        return \
            _decode_str(dbus.dbus_message_get_signature(self._dbobj))
    #end signature

    @property
    def serial(self) :
        return \
            dbus.dbus_message_get_serial(self._dbobj)
    #end serial

    @property
    def reply_serial(self) :
        return \
            dbus.dbus_message_get_reply_serial(self._dbobj)
    #end reply_serial

    @property
    def no_reply(self) :
        return \
            dbus.dbus_message_get_no_reply(self._dbobj) != 0
    #end no_reply

    @no_reply.setter
    def no_reply(self, no_reply) :
        dbus.dbus_message_set_no_reply(self._dbobj, no_reply)
    #end no_reply

    class Iter :
        "cursor over the arguments of a Message, either for reading or for appending." \
        " Do not instantiate directly; get from Message.iter_init, Message.Iter.recurse," \
        " Message.iter_init_append or Message.Iter.open_container."

        __slots__ = ("_dbobj", "_parent", "_message", "_nulliter", "_writing") # to forestall typos

        def __init__(self, _parent, _message, _writing) :
            self._dbobj = DBUS.MessageIter()
            self._parent = _parent
            self._message = _message # keep the message alive while iterating over it
            self._nulliter = False
            self._writing = _writing
        #end __init__

        @property
        def arg_type(self) :
            "the type code of the current argument, or TYPE_INVALID past the end."
            assert not self._writing, "cannot read from write iterator"
            if self._nulliter :
                result = DBUS.TYPE_INVALID
            else :
                result = dbus.dbus_message_iter_get_arg_type(self._dbobj)
            #end if
            return \
                result
        #end arg_type

        @property
        def element_type(self) :
            assert not self._writing, "cannot read from write iterator"
            return \
                dbus.dbus_message_iter_get_element_type(self._dbobj)
        #end element_type

        def advance(self) :
            "moves to the next argument, returning False if there is none."
            assert not self._writing, "cannot read from write iterator"
            return \
                not self._nulliter and dbus.dbus_message_iter_next(self._dbobj) != 0
        #end advance

        def recurse(self) :
            "returns a cursor over the contents of the current container argument."
            assert not self._writing, "cannot read from write iterator"
            subiter = type(self)(self, self._message, False)
            dbus.dbus_message_iter_recurse(self._dbobj, subiter._dbobj)
            return \
                subiter
        #end recurse

        @property
        def signature(self) :
            "the signature of the current argument."
            assert not self._writing, "cannot read from write iterator"
            c_result = dbus.dbus_message_iter_get_signature(self._dbobj)
            if c_result == None :
                raise DBusFailure("dbus_message_iter_get_signature failure")
            #end if
            result = ct.cast(c_result, ct.c_char_p).value.decode()
            dbus.dbus_free(c_result)
            return \
                result
        #end signature

        @property
        def basic(self) :
            "the value of the current argument, which must be of a basic type. For a" \
            " TYPE_UNIX_FD argument each access returns a new duplicate descriptor," \
            " which the caller must close."
            assert not self._writing, "cannot read from write iterator"
            c_result_type = DBUS.basic_to_ctypes[self.arg_type]
            c_result = c_result_type()
            dbus.dbus_message_iter_get_basic(self._dbobj, ct.byref(c_result))
            if c_result_type == ct.c_char_p :
                result = c_result.value.decode()
            else :
                result = c_result.value
            #end if
            return \
                result
        #end basic

        def append_basic(self, type, value) :
            assert self._writing, "cannot write to read iterator"
            if type in DBUS.int_ranges :
                value = DBUS.int_subtype(value, *DBUS.int_ranges[type])
            #end if
            c_type = DBUS.basic_to_ctypes[type]
            if c_type == ct.c_char_p :
                value = value.encode()
            #end if
            c_value = c_type(value)
            if not dbus.dbus_message_iter_append_basic(self._dbobj, type, ct.byref(c_value)) :
                raise DBusFailure("dbus_message_iter_append_basic failed")
            #end if
            return \
                self
        #end append_basic

        def open_container(self, type, contained_signature) :
            assert self._writing, "cannot write to read iterator"
            subiter = self.__class__(self, self._message, True)
            if not dbus.dbus_message_iter_open_container(self._dbobj, type, _encode_str(contained_signature), subiter._dbobj) :
                raise DBusFailure("dbus_message_iter_open_container failed")
            #end if
            return \
                subiter
        #end open_container

        def close(self) :
            assert self._writing, "cannot write to read iterator"
            assert self._parent != None, "cannot close top-level iterator"
            if not dbus.dbus_message_iter_close_container(self._parent._dbobj, self._dbobj) :
                raise DBusFailure("dbus_message_iter_close_container failed")
            #end if
            return \
                self._parent
        #end close

        def abandon(self) :
            assert self._writing, "cannot write to read iterator"
            assert self._parent != None, "cannot abandon top-level iterator"
            dbus.dbus_message_iter_abandon_container(self._parent._dbobj, self._dbobj)
            return \
                self._parent
        #end abandon

    #end Iter

    def iter_init(self) :
        "returns a read cursor positioned at the first argument."
        iter = self.Iter(None, self, False)
        if dbus.dbus_message_iter_init(self._dbobj, iter._dbobj) == 0 :
            iter._nulliter = True
        #end if
        return \
            iter
    #end iter_init

    def iter_init_append(self) :
        "returns a cursor for appending arguments."
        iter = self.Iter(None, self, True)
        dbus.dbus_message_iter_init_append(self._dbobj, iter._dbobj)
        return \
            iter
    #end iter_init_append

#end Message

class PendingCall :
    "wrapper around a DBusPendingCall object, representing a method call awaiting" \
    " its reply."
    # <https://dbus.freedesktop.org/doc/api/html/group__DBusPendingCall.html>

    __slots__ = ("__weakref__", "_dbobj", "_wrap_notify") # to forestall typos

    _instances = WeakValueDictionary()

    def __new__(celf, _dbobj) :
        self = celf._instances.get(_dbobj)
        if self == None :
            self = super().__new__(celf)
            self._dbobj = _dbobj
            self._wrap_notify = None
            celf._instances[_dbobj] = self
        else :
            dbus.dbus_pending_call_unref(self._dbobj)
              # lose extra reference created by caller
        #end if
        return \
            self
    #end __new__

    def __del__(self) :
        if self._dbobj != None :
            dbus.dbus_pending_call_unref(self._dbobj)
            self._dbobj = None
        #end if
    #end __del__

    def set_notify(self, function, user_data) :
        "arranges for function(pending, user_data) to be called when the reply" \
        " arrives or the call times out."

        def _wrap_notify(c_pending, c_user_data) :
            try :
                function(self, user_data)
            except Exception :
                logger.exception("pending-call notify function failed")
            #end try
        #end _wrap_notify

    #begin set_notify
        self._wrap_notify = DBUS.PendingCallNotifyFunction(_wrap_notify)
        if not dbus.dbus_pending_call_set_notify(self._dbobj, self._wrap_notify, None, None) :
            raise DBusFailure("dbus_pending_call_set_notify failed")
        #end if
    #end set_notify

    def cancel(self) :
        dbus.dbus_pending_call_cancel(self._dbobj)
    #end cancel

    @property
    def completed(self) :
        return \
            dbus.dbus_pending_call_get_completed(self._dbobj) != 0
    #end completed

    def steal_reply(self) :
        "the reply Message, or None if there is none."
        result = dbus.dbus_pending_call_steal_reply(self._dbobj)
        if result != None :
            result = Message(result)
        #end if
        return \
            result
    #end steal_reply

#end PendingCall

#+
# Cleanup
#-

def _atexit() :
    # disable all __del__ methods at process termination to avoid segfaults
    for cls in Connection, Message, PendingCall, Error :
        delattr(cls, "__del__")
    #end for
#end _atexit
atexit.register(_atexit)
del _atexit
