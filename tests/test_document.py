import unittest

import bson
from bson.objectid import ObjectId
from bson.raw_bson import RawBSONDocument
from bson.son import SON

from wrongoclient.bsoncore import (
    TYPE_EMBEDDED_DOCUMENT,
    TYPE_INT32,
    TYPE_OBJECT_ID,
    TYPE_STRING,
    Document,
    Value,
)
from wrongoclient.document import (
    NIL_OBJECT_ID,
    ensure_dollar_key,
    ensure_id,
    ensure_no_dollar_key,
    normalize_document,
    normalize_value,
)
from wrongoclient.errors import (
    DecodeError,
    EmptyDocumentError,
    MalformedDocumentError,
    MarshalError,
    MissingOperatorPrefixError,
    NilDocumentError,
    OperatorPrefixNotAllowedError,
    WrongoClientError,
)


class Unencodable:
    pass


class NormalizeDocumentTests(unittest.TestCase):
    def test_nil_value(self) -> None:
        with self.assertRaises(NilDocumentError):
            normalize_document(None)

    def test_byte_buffer_is_returned_as_is(self) -> None:
        raw = bson.encode({"a": 1, "b": "two"})
        for value in (raw, bytearray(raw), memoryview(raw)):
            doc = normalize_document(value)
            self.assertIsInstance(doc, Document)
            self.assertEqual(doc, raw)

    def test_byte_buffer_skips_encoder(self) -> None:
        # Not a valid document; only the encoder would notice.
        self.assertEqual(normalize_document(b"garbage"), b"garbage")

    def test_document_is_returned_unchanged(self) -> None:
        doc = Document(bson.encode({"a": 1}))
        self.assertIs(normalize_document(doc), doc)

    def test_mapping_shapes(self) -> None:
        son = SON([("z", 1), ("a", 2)])
        self.assertEqual(normalize_document(son), bson.encode(son))
        raw = RawBSONDocument(bson.encode({"x": 1}))
        self.assertEqual(normalize_document(raw), raw.raw)

    def test_encoder_failure_is_wrapped(self) -> None:
        value = {"bad": Unencodable()}
        with self.assertRaises(MarshalError) as ctx:
            normalize_document(value)
        self.assertIs(ctx.exception.value, value)
        self.assertIsNotNone(ctx.exception.__cause__)
        self.assertIn("dict", str(ctx.exception))
        self.assertIsInstance(ctx.exception, WrongoClientError)

    def test_non_document_value_is_wrapped(self) -> None:
        with self.assertRaises(MarshalError):
            normalize_document(12)

    def test_key_order_is_preserved(self) -> None:
        doc = normalize_document(SON([("a", 1), ("_id", 2)]))
        self.assertEqual(doc.first_key(), "a")
        self.assertEqual([e.key for e in doc.elements()], ["a", "_id"])

    def test_bad_nested_value_marshaler_is_wrapped(self) -> None:
        class Broken:
            def marshal_bson_value(self) -> tuple[int, bytes]:
                return TYPE_EMBEDDED_DOCUMENT, b"\x01"

        value = {"a": Broken()}
        with self.assertRaises(MarshalError) as ctx:
            normalize_document(value)
        self.assertIs(ctx.exception.value, value)


class NormalizeValueTests(unittest.TestCase):
    def test_scalar(self) -> None:
        self.assertEqual(normalize_value(1), Value(TYPE_INT32, b"\x01\x00\x00\x00"))
        self.assertEqual(normalize_value("ab"), Value(TYPE_STRING, b"\x03\x00\x00\x00ab\x00"))

    def test_value_marshaler(self) -> None:
        class Custom:
            def marshal_bson_value(self) -> tuple[int, bytes]:
                return TYPE_INT32, b"\x07\x00\x00\x00"

        self.assertEqual(normalize_value(Custom()), Value(TYPE_INT32, b"\x07\x00\x00\x00"))

    def test_failure(self) -> None:
        obj = Unencodable()
        with self.assertRaises(MarshalError) as ctx:
            normalize_value(obj)
        self.assertIs(ctx.exception.value, obj)


class EnsureIdTests(unittest.TestCase):
    def test_existing_id_is_kept(self) -> None:
        oid = ObjectId()
        raw = bson.encode(SON([("name", "x"), ("_id", oid)]))
        doc, decoded = ensure_id(raw)
        self.assertEqual(doc, raw)
        self.assertEqual(decoded, oid)

    def test_existing_non_object_id(self) -> None:
        raw = Document(bson.encode({"_id": {"k": 1}, "a": 2}))
        doc, decoded = ensure_id(raw, ObjectId())
        self.assertIs(doc, raw)
        self.assertEqual(decoded, {"k": 1})

    def test_missing_id_is_prepended(self) -> None:
        original = bson.encode(SON([("b", 1), ("a", "x")]))
        doc, oid = ensure_id(original)
        self.assertIsInstance(oid, ObjectId)
        self.assertNotEqual(oid, NIL_OBJECT_ID)

        elements = doc.elements()
        self.assertEqual([e.key for e in elements], ["_id", "b", "a"])
        self.assertEqual(elements[0].type, TYPE_OBJECT_ID)
        self.assertEqual(elements[0].data, oid.binary)
        # Original element bytes are untouched; only the header changes.
        self.assertEqual(doc[4 + 17 :], original[4:])
        self.assertEqual(len(doc), len(original) + 17)
        doc.validate()
        self.assertEqual(bson.decode(doc), {"_id": oid, "b": 1, "a": "x"})

    def test_supplied_id_is_used(self) -> None:
        oid = ObjectId()
        doc, returned = ensure_id(bson.encode({"a": 1}), oid)
        self.assertEqual(returned, oid)
        self.assertEqual(bson.decode(doc)["_id"], oid)

    def test_nil_id_is_replaced(self) -> None:
        doc, returned = ensure_id(bson.encode({}), NIL_OBJECT_ID)
        self.assertNotEqual(returned, NIL_OBJECT_ID)
        self.assertEqual(bson.decode(doc), {"_id": returned})

    def test_malformed_document(self) -> None:
        with self.assertRaises(MalformedDocumentError):
            ensure_id(b"\x01\x00")

    def test_undecodable_id(self) -> None:
        # _id is an embedded document whose terminator byte is not zero.
        element = b"\x03_id\x00" + b"\x05\x00\x00\x00\x01"
        raw = (len(element) + 5).to_bytes(4, "little") + element + b"\x00"
        with self.assertRaises(DecodeError):
            ensure_id(raw)


class DollarKeyTests(unittest.TestCase):
    def test_ensure_dollar_key(self) -> None:
        with self.assertRaises(EmptyDocumentError):
            ensure_dollar_key(bson.encode({}))
        with self.assertRaises(MissingOperatorPrefixError):
            ensure_dollar_key(bson.encode({"name": "x"}))
        ensure_dollar_key(bson.encode({"$set": {"name": "x"}}))

    def test_only_first_key_matters(self) -> None:
        ensure_dollar_key(bson.encode(SON([("$set", {}), ("plain", 1)])))
        with self.assertRaises(MissingOperatorPrefixError):
            ensure_dollar_key(bson.encode(SON([("plain", 1), ("$set", {})])))

    def test_ensure_no_dollar_key(self) -> None:
        ensure_no_dollar_key(bson.encode({}))
        ensure_no_dollar_key(bson.encode({"name": "x"}))
        with self.assertRaises(OperatorPrefixNotAllowedError):
            ensure_no_dollar_key(bson.encode({"$set": {"name": "x"}}))


if __name__ == "__main__":
    unittest.main()
