import datetime
import unittest
import uuid

from featvar import MISSING, NEVER, Condition, ConditionEvaluator, Filter, ParseError
from featvar._conditions import lookup

_utc = datetime.timezone.utc
_guid = uuid.UUID("d0a54c2e-1b43-4e8e-9f35-7a8bd0c1f2aa")


class TestOperators(unittest.TestCase):
    def test_evaluate(self):
        cases = [
            # expression, value, expected
            ("US", "us", True),
            ("US", "CA", False),
            ("US", MISSING, False),
            (5, "5", True),
            (5, 5.0, True),
            (True, True, True),
            (True, "true", False),
            (1, True, False),
            ({"$eq": "a"}, "A", True),
            ({"eq": "a"}, "A", True),
            (["a", "b"], ["a", "b"], True),
            (["a", "b"], ["b", "a"], False),
            (["a", "b"], "a", False),
            ({"$ne": "a"}, "b", True),
            ({"$ne": "a"}, "A", False),
            ({"$ne": "a"}, MISSING, False),
            ({"$gt": 10}, 11, True),
            ({"$gt": 10}, 9.5, False),
            ({"$gt": "10"}, 11, True),
            ({"$gte": 10}, 10, True),
            ({"$lt": 10}, "9", True),
            ({"$lt": 10}, MISSING, False),
            ({"$lte": 10}, 10.0, True),
            ({"$lt": "b"}, "A", True),
            ({"$gt": "alphabet", "$lt": "zebra"}, "AZL", True),
            ({"gt": 1, "lt": 5}, 3, True),
            ({"gt": 1, "lt": 5}, 5, False),
            ({"$in": ["US", "UK"]}, "uk", True),
            ({"$in": ["US", "UK"]}, "CA", False),
            ({"$in": ["US", "UK"]}, MISSING, False),
            ({"$in": ["a"]}, ["b", "A"], True),
            ({"$in": ["a"]}, [], False),
            ({"$in": [1, 2]}, "2", True),
            ({"$nin": ["a"]}, "b", True),
            ({"$nin": ["a"]}, "A", False),
            ({"$nin": ["a"]}, MISSING, True),
            ({"$exists": True}, 0, True),
            ({"$exists": True}, MISSING, False),
            ({"$exists": False}, MISSING, True),
            ({"$exists": False}, 0, False),
            ({"$regex": "^a.*c$"}, "ABC", True),
            ({"$regex": "b"}, "abc", True),
            ({"$regex": "^b"}, "abc", False),
            ({"$regex": "x"}, MISSING, False),
            ({"$size": 2}, ["a", "b"], True),
            ({"$size": 0}, [], True),
            ({"$size": {"$gt": 1}}, ["a"], False),
            ({"$size": {"$gte": 1, "$lt": 3}}, ["a", "b"], True),
            ({"$size": 3}, "abc", False),
            ({"$elemMatch": {"$gt": 5}}, [1, 7], True),
            ({"$elemMatch": {"$gt": 5}}, [1, 2], False),
            ({"$elemMatch": {"$eq": "A"}}, "A", False),
            ({"$all": ["a", "b"]}, ["b", "c", "A"], True),
            ({"$all": ["a", "b"]}, ["a"], False),
            ({"$and": [{"$gt": 1}, {"$lt": 5}]}, 3, True),
            ({"$and": [{"$gt": 1}, {"$lt": 5}]}, 6, False),
            ({"$and": []}, "x", True),
            ({"$or": []}, "x", True),
            ({"$or": [{"$eq": "a"}, {"$eq": "b"}]}, "b", True),
            ({"$or": [{"$eq": "a"}, {"$eq": "b"}]}, "c", False),
            ({"$nor": [{"$eq": "a"}]}, "b", True),
            ({"$nor": [{"$eq": "a"}]}, "a", False),
            ({"$not": {"$eq": "a"}}, "a", False),
            ({"$not": {"$eq": "a"}}, "b", True),
            ({"$vgt": "1.2.3"}, "1.2.10", True),
            ({"$vlt": "2.0.0"}, "2.0.0-beta", True),
            ({"$veq": "1.2"}, "v1.2.0", True),
            ({"$vne": "1.2"}, "1.3", True),
            ({"$vgte": "1.2.3"}, "1.2.3", True),
            ({"$vlte": "1.2.3"}, "1.2.4", False),
            ({"$vgt": "1.0"}, "not..version", False),
            ({"$vgt": "1.0"}, MISSING, False),
            ({"$type": "string"}, "a", True),
            ({"$type": "number"}, 1.5, True),
            ({"$type": "number"}, True, False),
            ({"$type": "boolean"}, False, True),
            ({"$type": "array"}, ["a"], True),
            ({"$type": "timestamp"}, datetime.datetime(2024, 1, 1, tzinfo=_utc), True),
            ({"$type": "guid"}, _guid, True),
            ({"$type": "string"}, MISSING, False),
            ({"$gt": "2024-01-01T00:00:00Z"}, datetime.datetime(2024, 6, 1, tzinfo=_utc), True),
            ({"$lt": "2024-01-01T00:00:00Z"}, datetime.datetime(2024, 6, 1, tzinfo=_utc), False),
            ({"$gte": "2024-06-01T00:00:00+00:00"}, datetime.datetime(2024, 6, 1), True),
            ({"$gt": "not a date"}, datetime.datetime(2024, 6, 1, tzinfo=_utc), False),
            (str(_guid).upper(), _guid, True),
            ({"$in": [str(_guid)]}, _guid, True),
        ]
        ev = ConditionEvaluator()
        for expr, value, expected in cases:
            with self.subTest(expr=expr, value=value):
                self.assertEqual(ev.evaluate(ev.parse(expr), value), expected)

    def test_parse_errors(self):
        cases = [
            None,
            {"$foo": 1},
            {"foo": 1},
            {"$in": "a"},
            {"$nin": 5},
            {"$regex": "("},
            {"$regex": 5},
            {"$exists": "yes"},
            {"$type": "decimal"},
            {"$vgt": "1..2"},
            {"$vgt": True},
            {"$size": -1},
            {"$size": "2"},
            {"$size": {"$in": [1]}},
            {"$eq": {"a": 1}},
            {"$gt": float("nan")},
            {"$elemMatch": 5},
            {"$and": {"$eq": 1}},
        ]
        ev = ConditionEvaluator()
        for expr in cases:
            with self.subTest(expr=expr):
                with self.assertRaises(ParseError):
                    ev.parse(expr)

    def test_parse_object_errors(self):
        cases = [
            "a",
            {"$foo": []},
            {"$or": {"a": 1}},
            {"": 1},
            {"a": {"$bad": 1}},
        ]
        ev = ConditionEvaluator()
        for expr in cases:
            with self.subTest(expr=expr):
                with self.assertRaises(ParseError):
                    ev.parse_object(expr)

    def test_parsed_shape(self):
        ev = ConditionEvaluator()
        self.assertEqual(ev.parse("a"), Condition("EQ", "a"))
        self.assertEqual(ev.parse({"$in": ["a", "b"]}), Condition("IN", ("a", "b")))
        self.assertEqual(ev.parse({"$size": 2}), Condition("SIZE", "EQ", 2))
        self.assertEqual(
            ev.parse_object({"a": 1, "$not": {"b": 2}}),
            Condition("AND", (Condition("ATTR", "a", Condition("EQ", 1)), Condition("NOT", Condition("ATTR", "b", Condition("EQ", 2))))),
        )
        self.assertIs(ev.parse(NEVER), NEVER)
        self.assertFalse(ev.evaluate(NEVER, "x"))

    def test_parse_is_memoized(self):
        ev = ConditionEvaluator()
        self.assertIs(ev.parse({"$in": ["a", "b"]}), ev.parse({"$in": ["a", "b"]}))
        self.assertIsNot(ev.parse(["a"]), ev.parse(("a",)))


class TestFilters(unittest.TestCase):
    def test_matches(self):
        cases = [
            # filter, attributes, expected
            (Filter("country", []), {}, True),
            (Filter("country", [{"in": ["US", "UK"]}]), {"country": "us"}, True),
            (Filter("country", [{"in": ["US", "UK"]}]), {"country": "CA"}, False),
            (Filter("Country", ["us"]), {"country": "US"}, True),
            (Filter("country", ["US"]), {"COUNTRY": "US"}, True),
            (Filter("age", [{"exists": False}]), {}, True),
            (Filter("age", [{"exists": False}]), {"age": 0}, False),
            (Filter("age", [{"exists": False}]), {"age": None}, True),
            (Filter("country", ["US", "UK"]), {"country": "UK"}, True),
            (Filter("country", [{"$bad": 1}, "UK"]), {"country": "UK"}, True),
            (Filter("country", [{"$bad": 1}]), {"country": "UK"}, False),
            (Filter(None, [{"$or": [{"a": 1}, {"b": {"$gt": 2}}]}]), {"b": 3}, True),
            (Filter(None, [{"$or": [{"a": 1}, {"b": {"$gt": 2}}]}]), {"a": 2}, False),
            (Filter(None, [{"a": 1, "B": "x"}]), {"a": 1, "b": "X"}, True),
            (Filter(None, [{"$not": {"a": 1}}]), {}, True),
            (Filter(None, [{"$nor": [{"a": {"$exists": True}}]}]), {"a": 1}, False),
        ]
        ev = ConditionEvaluator()
        for f, attributes, expected in cases:
            with self.subTest(filter=f, attributes=attributes):
                self.assertEqual(ev.matches(f, attributes), expected)

    def test_bad_condition_logged_once(self):
        ev = ConditionEvaluator()
        f = Filter("x", [{"$regex": "("}])
        with self.assertLogs("featvar._conditions", "WARNING") as logs:
            self.assertFalse(ev.matches(f, {"x": "("}))
        self.assertEqual(len(logs.output), 1)
        with self.assertNoLogs("featvar._conditions", "WARNING"):
            self.assertFalse(ev.matches(f, {"x": "("}))

    def test_lookup(self):
        self.assertIs(lookup({}, "a"), MISSING)
        self.assertIs(lookup({"a": None}, "a"), MISSING)
        self.assertEqual(lookup({"a": 0}, "A"), 0)
        self.assertEqual(lookup({"Mixed": 1}, "mIXED"), 1)
