#+
# Tests of the dbuswire value model, signature grammar, native conversion
# and match-rule strings.
#-

import pytest
import dbuswire
from dbuswire import \
    DBUS, \
    Array, \
    Boolean, \
    Byte, \
    DictEntry, \
    Double, \
    Int16, \
    Int32, \
    Int64, \
    ObjectPath, \
    ShapeError, \
    Signature, \
    String, \
    Struct, \
    UInt32, \
    UInt64, \
    UnixFD, \
    Variant

class TestSignatureComposition :

    def test_array_of_array_of_byte(self) :
        value = Array("ay", [Array("y", [Byte(1), Byte(2)]), Array("y")])
        assert value.signature == "aay"
    #end test_array_of_array_of_byte

    def test_struct_of_string_and_byte(self) :
        assert Struct([String("a"), Byte(1)]).signature == "(sy)"
    #end test_struct_of_string_and_byte

    def test_dict_of_string_to_byte(self) :
        value = dbuswire.to_wire({"hello" : 0, "world" : 1}, "a{sy}")
        assert value.signature == "a{sy}"
        assert value.is_dict
    #end test_dict_of_string_to_byte

    def test_variant_signature_is_v(self) :
        value = Variant(Struct([Int32(1), Array("s", [String("x")])]))
        assert value.signature == "v"
        assert value.inner_signature == "(ias)"
    #end test_variant_signature_is_v

    def test_signature_of_argument_list(self) :
        assert dbuswire.signature_of([String("s"), UInt32(3), Variant(Boolean(True))]) == "suv"
        assert dbuswire.signature_of([]) == ""
    #end test_signature_of_argument_list

    def test_empty_array_keeps_element_type(self) :
        assert Array("a{sv}").signature == "aa{sv}"
    #end test_empty_array_keeps_element_type

#end TestSignatureComposition

class TestSignatureGrammar :

    @pytest.mark.parametrize \
      (
        "signature, expected",
        [
            ("", []),
            ("i", ["i"]),
            ("sa{sv}as", ["s", "a{sv}", "as"]),
            ("(i(ss))ay", ["(i(ss))", "ay"]),
            ("aa{s(iv)}", ["aa{s(iv)}"]),
        ]
      )
    def test_parse(self, signature, expected) :
        assert dbuswire.parse_signature(signature) == expected
    #end test_parse

    @pytest.mark.parametrize \
      (
        "signature",
        [
            "a", "(", "(i", "i)", "()", "{sv}", "a{vs}", "a{s}", "a{sss}",
            "a{sv", "z", "a{s{ss}}",
        ]
      )
    def test_malformed(self, signature) :
        with pytest.raises(ValueError) :
            dbuswire.parse_signature(signature)
        #end with
    #end test_malformed

    def test_nesting_limits(self) :
        assert dbuswire.parse_signature("a" * 32 + "y") == ["a" * 32 + "y"]
        with pytest.raises(ValueError) :
            dbuswire.parse_signature("a" * 33 + "y")
        #end with
        with pytest.raises(ValueError) :
            dbuswire.parse_signature("(" * 33 + "y" + ")" * 33)
        #end with
    #end test_nesting_limits

    def test_length_limit(self) :
        with pytest.raises(ValueError) :
            dbuswire.parse_signature("y" * 256)
        #end with
    #end test_length_limit

    def test_type_classification(self) :
        assert dbuswire.is_basic_type(DBUS.TYPE_STRING)
        assert not dbuswire.is_basic_type(DBUS.TYPE_VARIANT)
        assert dbuswire.is_container_type(DBUS.TYPE_ARRAY)
        assert not dbuswire.is_container_type(DBUS.TYPE_UINT64)
    #end test_type_classification

#end TestSignatureGrammar

class TestBasicValues :

    @pytest.mark.parametrize \
      (
        "cls, bad",
        [
            (Byte, 256),
            (Byte, -1),
            (Int16, 1 << 15),
            (UInt32, -1),
            (Int64, 1 << 63),
            (UInt64, 1 << 64),
            (UnixFD, -1),
        ]
      )
    def test_integer_range(self, cls, bad) :
        with pytest.raises(ValueError) :
            cls(bad)
        #end with
    #end test_integer_range

    def test_boolean_only_accepts_truth_values(self) :
        assert Boolean(True).value is True
        assert Boolean(0).value is False
        with pytest.raises((TypeError, ValueError)) :
            Boolean(2)
        #end with
    #end test_boolean_only_accepts_truth_values

    def test_double_rejects_bool(self) :
        assert Double(3).value == 3.0
        with pytest.raises(TypeError) :
            Double(True)
        #end with
    #end test_double_rejects_bool

    def test_string_rejects_nul(self) :
        with pytest.raises(ValueError) :
            String("a\0b")
        #end with
    #end test_string_rejects_nul

    def test_object_path(self) :
        assert ObjectPath("/app/test").value == "/app/test"
        assert ObjectPath("/").value == "/"
        for bad in ("app/test", "/app/", "//app", "/app-test") :
            with pytest.raises(ValueError) :
                ObjectPath(bad)
            #end with
        #end for
    #end test_object_path

    def test_signature_value(self) :
        assert Signature("a{sv}").value == "a{sv}"
        with pytest.raises(ValueError) :
            Signature("a{")
        #end with
    #end test_signature_value

    def test_equality_is_structural_and_typed(self) :
        assert Int32(5) == Int32(5)
        assert Int32(5) != Int64(5)
        assert String("/a") != ObjectPath("/a")
        assert len({Int32(5), Int32(5), UInt32(5)}) == 2
    #end test_equality_is_structural_and_typed

#end TestBasicValues

class TestContainers :

    def test_array_rejects_mixed_elements(self) :
        with pytest.raises(TypeError) :
            Array("i", [Int32(1), Int64(2)])
        #end with
    #end test_array_rejects_mixed_elements

    def test_dict_entry_key_must_be_basic(self) :
        with pytest.raises(TypeError) :
            DictEntry(Variant(Int32(1)), String("x"))
        #end with
        with pytest.raises(TypeError) :
            DictEntry(Array("y"), String("x"))
        #end with
    #end test_dict_entry_key_must_be_basic

    def test_struct_needs_fields(self) :
        with pytest.raises(ValueError) :
            Struct([])
        #end with
    #end test_struct_needs_fields

    def test_variant_cannot_hold_dict_entry(self) :
        with pytest.raises(TypeError) :
            Variant(DictEntry(String("k"), Int32(1)))
        #end with
    #end test_variant_cannot_hold_dict_entry

    def test_dict_collapse_last_key_wins(self) :
        value = Array \
          (
            "{sy}",
            [
                DictEntry(String("a"), Byte(1)),
                DictEntry(String("b"), Byte(2)),
                DictEntry(String("a"), Byte(3)),
            ]
          )
        assert len(value) == 3
        assert value.as_dict() == {"a" : Byte(3), "b" : Byte(2)}
        assert value.unwrap() == {"a" : 3, "b" : 2}
    #end test_dict_collapse_last_key_wins

    def test_dict_array_element_signature(self) :
        value = Array("{sy}", [DictEntry(String("hello"), Byte(0))])
        assert value.signature == "a{sy}"
        assert Array("{sv}").is_dict
        for bad in ("", "{sy", "{vs}", "sy", "{s}") :
            with pytest.raises(ValueError) :
                Array(bad)
            #end with
        #end for
        assert Array("a" * 31 + "y").signature == "a" * 32 + "y"
        with pytest.raises(ValueError) :
            Array("a" * 32 + "y")
        #end with
    #end test_dict_array_element_signature

#end TestContainers

class TestExtraction :

    def test_unwrap_nested(self) :
        value = dbuswire.to_wire \
          (
            {"name" : "x", "sizes" : [1, 2], "pair" : (True, 2.5)},
            "a{sv}"
          )
        assert value.unwrap() == {"name" : "x", "sizes" : [1, 2], "pair" : (True, 2.5)}
    #end test_unwrap_nested

    def test_typed_accessors(self) :
        assert Int32(4).as_int() == 4
        assert String("x").as_str() == "x"
        assert Boolean(False).as_bool() is False
        assert Double(1.5).as_float() == 1.5
        assert Struct([Int32(1), String("a")]).as_tuple() == (Int32(1), String("a"))
        assert Array("i", [Int32(1)]).as_list() == [Int32(1)]
    #end test_typed_accessors

    def test_variant_accessors_see_through(self) :
        assert Variant(String("x")).as_str() == "x"
        assert Variant(Int32(7)).unwrap() == 7
    #end test_variant_accessors_see_through

    @pytest.mark.parametrize \
      (
        "value, accessor",
        [
            (String("x"), "as_int"),
            (Int32(1), "as_str"),
            (Array("i"), "as_dict"),
            (Struct([Int32(1)]), "as_dict"),
            (Variant(Int32(1)), "as_list"),
            (Int32(1), "as_bool"),
        ]
      )
    def test_wrong_shape(self, value, accessor) :
        with pytest.raises(ShapeError) :
            getattr(value, accessor)()
        #end with
    #end test_wrong_shape

    def test_shape_error_is_type_error(self) :
        assert issubclass(ShapeError, TypeError)
    #end test_shape_error_is_type_error

#end TestExtraction

class TestNativeConversion :

    @pytest.mark.parametrize \
      (
        "native, signature",
        [
            (True, "b"),
            (7, "i"),
            (1 << 40, "x"),
            (1 << 63, "t"),
            (2.5, "d"),
            ("text", "s"),
            (b"\x00\x01", "ay"),
            ((1, "a"), "(is)"),
            ([[1], [2, 3]], "aai"),
            ({"a" : 1}, "a{si}"),
        ]
      )
    def test_inference(self, native, signature) :
        assert dbuswire.to_wire(native).signature == signature
    #end test_inference

    @pytest.mark.parametrize("native", [[], {}, None, object(), [1, "a"]])
    def test_uninferable(self, native) :
        with pytest.raises(TypeError) :
            dbuswire.to_wire(native)
        #end with
    #end test_uninferable

    def test_explicit_signature(self) :
        assert dbuswire.to_wire(5, "y") == Byte(5)
        assert dbuswire.to_wire([], "as") == Array("s")
        assert dbuswire.to_wire("/x", "o") == ObjectPath("/x")
        assert dbuswire.to_wire(5, "v") == Variant(Int32(5))
        assert dbuswire.to_wire([1, "a"], "(us)") == Struct([UInt32(1), String("a")])
    #end test_explicit_signature

    def test_wire_value_passes_through(self) :
        value = UInt32(3)
        assert dbuswire.to_wire(value) is value
        assert dbuswire.to_wire(value, "u") is value
        with pytest.raises(TypeError) :
            dbuswire.to_wire(value, "i")
        #end with
    #end test_wire_value_passes_through

    def test_signature_mismatch(self) :
        with pytest.raises(TypeError) :
            dbuswire.to_wire("abc", "as")
        #end with
        with pytest.raises(TypeError) :
            dbuswire.to_wire([1, 2], "a{si}")
        #end with
        with pytest.raises(ValueError) :
            dbuswire.to_wire(1, "ii")
        #end with
    #end test_signature_mismatch

    def test_argument_list(self) :
        assert dbuswire.to_wire_args(["a", 1], "sy") == [String("a"), Byte(1)]
        assert dbuswire.to_wire_args(["a", 1]) == [String("a"), Int32(1)]
        with pytest.raises(TypeError) :
            dbuswire.to_wire_args(["a"], "sy")
        #end with
    #end test_argument_list

#end TestNativeConversion

class TestMatchRules :

    def test_format(self) :
        rule = dbuswire.format_rule \
          (
            {
                "type" : "signal",
                "interface" : "org.freedesktop.DBus",
                "member" : "NameOwnerChanged",
                "path" : None,
                "arg0" : "com.example.Test",
            }
          )
        assert rule == \
            (
                "type='signal',interface='org.freedesktop.DBus',"
                "member='NameOwnerChanged',arg0='com.example.Test'"
            )
    #end test_format

    def test_apostrophe_escaped(self) :
        rule = dbuswire.format_rule({"arg0" : "it's"})
        assert rule == "arg0='it'\\''s'"
        assert dbuswire.unformat_rule(rule) == {"arg0" : "it's"}
    #end test_apostrophe_escaped

    def test_unformat(self) :
        assert dbuswire.unformat_rule("type='signal',member='Foo',arg0='a,b'") == \
            {"type" : "signal", "member" : "Foo", "arg0" : "a,b"}
        assert dbuswire.unformat_rule("") == {}
    #end test_unformat

    @pytest.mark.parametrize("rule", ["type", "='x'", "a='1',a='2'", "a='x"])
    def test_unformat_malformed(self, rule) :
        with pytest.raises(ValueError) :
            dbuswire.unformat_rule(rule)
        #end with
    #end test_unformat_malformed

#end TestMatchRules
