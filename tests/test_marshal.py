#+
# Tests of encoding WireValues onto a message argument cursor and decoding
# them back.
#-

import pytest
import dbuswire
from dbuswire import \
    DBUS, \
    Array, \
    Boolean, \
    Byte, \
    CorruptMessage, \
    DBusFailure, \
    DictEntry, \
    Double, \
    Int16, \
    Int64, \
    ObjectPath, \
    Signature, \
    String, \
    Struct, \
    UInt16, \
    UInt64, \
    UnixFD, \
    Variant
from fakebus import \
    FakeMessage

def round_trip(values) :
    message = FakeMessage.new_signal("/app/test", "com.example.Test", "Foo")
    dbuswire.encode_args(values, message.iter_init_append())
    return \
        message, dbuswire.decode_args(message.iter_init())
#end round_trip

SAMPLES = \
    [
        Byte(255),
        Boolean(True),
        Int16(-32768),
        UInt16(65535),
        Int64(-1 << 63),
        UInt64((1 << 64) - 1),
        Double(-0.5),
        String("Hello, world"),
        ObjectPath("/app/test"),
        Signature("a{sv}"),
        UnixFD(3),
        Array("y"),
        Array("ay", [Array("y", [Byte(1)]), Array("y")]),
        Struct([String("a"), Byte(1)]),
        Struct([Struct([Int16(1)]), Variant(Array("s", [String("x")]))]),
        Array("{sy}", [DictEntry(String("hello"), Byte(0)), DictEntry(String("world"), Byte(1))]),
        Variant(Variant(Boolean(False))),
        Array("{ov}", [DictEntry(ObjectPath("/a"), Variant(Struct([Double(1.0), String("b")])))]),
    ]

@pytest.mark.parametrize("value", SAMPLES, ids = lambda v : v.signature)
def test_round_trip(value) :
    message, decoded = round_trip([value])
    assert decoded == [value]
    assert decoded[0].signature == value.signature
    assert message.signature == value.signature
#end test_round_trip

def test_argument_list_in_order() :
    values = dbuswire.to_wire_args(["echo", 1, [1.5, 2.5], ("x", True)])
    message, decoded = round_trip(values)
    assert decoded == values
    assert message.signature == "siad(sb)"
#end test_argument_list_in_order

def test_empty_argument_list() :
    message, decoded = round_trip([])
    assert decoded == []
#end test_empty_argument_list

def test_dict_collapse_independent_of_encoding_order() :
    forward = dbuswire.to_wire({"hello" : 0, "world" : 1}, "a{sy}")
    backward = Array("{sy}", list(reversed(forward.items)))
    for value in (forward, backward) :
        message, decoded = round_trip([value])
        assert decoded[0].unwrap() == {"hello" : 0, "world" : 1}
        assert decoded[0].as_dict() == {"hello" : Byte(0), "world" : Byte(1)}
    #end for
#end test_dict_collapse_independent_of_encoding_order

def test_decode_advances_past_one_value() :
    message, ignore = round_trip([Array("i", dbuswire.to_wire_args([1, 2, 3])), String("after")])
    cursor = message.iter_init()
    assert dbuswire.decode(cursor).unwrap() == [1, 2, 3]
    assert dbuswire.decode(cursor) == String("after")
    assert cursor.arg_type == DBUS.TYPE_INVALID
#end test_decode_advances_past_one_value

def test_corrupt_type_code() :
    message = FakeMessage.new_signal("/app/test", "com.example.Test", "Foo")
    message.args.append((ord("!"), None, "!"))
    with pytest.raises(CorruptMessage) :
        dbuswire.decode_args(message.iter_init())
    #end with
#end test_corrupt_type_code

def test_corrupt_type_code_nested() :
    message = FakeMessage.new_signal("/app/test", "com.example.Test", "Foo")
    message.args.append((DBUS.TYPE_STRING, "fine", "s"))
    message.args.append((DBUS.TYPE_ARRAY, [(ord("!"), None, "!")], "a!"))
    with pytest.raises(CorruptMessage) :
        dbuswire.decode_args(message.iter_init())
    #end with
#end test_corrupt_type_code_nested

def test_corrupt_basic_value() :
    message = FakeMessage.new_signal("/app/test", "com.example.Test", "Foo")
    message.args.append((DBUS.TYPE_BYTE, 300, "y"))
    with pytest.raises(CorruptMessage) :
        dbuswire.decode_args(message.iter_init())
    #end with
#end test_corrupt_basic_value

class FailingCursor :
    "write cursor that fails on the nth basic append, recording what happens."

    def __init__(self, fail_at, log = None, parent = None) :
        self.fail_at = fail_at
        self.log = (log, [])[log == None]
        self.parent = parent
    #end __init__

    def append_basic(self, type, value) :
        self.log.append(("append", value))
        if sum(1 for entry in self.log if entry[0] == "append") == self.fail_at :
            raise DBusFailure("append failed")
        #end if
    #end append_basic

    def open_container(self, type, contained_signature) :
        self.log.append(("open", chr(type)))
        return \
            FailingCursor(self.fail_at, self.log, self)
    #end open_container

    def close(self) :
        self.log.append(("close",))
        return \
            self.parent
    #end close

    def abandon(self) :
        self.log.append(("abandon",))
        return \
            self.parent
    #end abandon

#end FailingCursor

def test_failed_container_is_abandoned() :
    cursor = FailingCursor(fail_at = 2)
    with pytest.raises(DBusFailure) :
        dbuswire.encode(Struct([String("a"), String("b"), String("c")]), cursor)
    #end with
    assert cursor.log == [("open", "r"), ("append", "a"), ("append", "b"), ("abandon",)]
#end test_failed_container_is_abandoned

def test_encode_rejects_native_values() :
    message = FakeMessage.new_signal("/app/test", "com.example.Test", "Foo")
    with pytest.raises(TypeError) :
        dbuswire.encode("not wrapped", message.iter_init_append())
    #end with
#end test_encode_rejects_native_values
