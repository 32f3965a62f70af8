import json
import unittest

from jsonschema.exceptions import ValidationError

from src.flagsync.model import (
    Config,
    InvalidConfigModelError,
    PrerequisiteFlagCondition,
    ProjectConfig,
    RedirectMode,
    SegmentCondition,
    Setting,
    SettingType,
    UserComparator,
    UserCondition,
    infer_value,
    unwrap_value,
)


_valid_config = {
    "p": {"u": "https://cdn-global.configcat.com", "r": 0, "s": "config-salt"},
    "s": [
        {"n": "Beta users", "r": [{"a": "Email", "c": 2, "l": ["@example.com"]}]},
    ],
    "f": {
        "flag": {
            "t": 0,
            "v": {"b": False},
            "i": "v-off",
            "r": [
                {
                    "c": [{"u": {"a": "Email", "c": 0, "l": ["a@x.com"]}}],
                    "s": {"v": {"b": True}, "i": "v-on"},
                },
                {
                    "c": [{"s": {"s": 0, "c": 0}}, {"p": {"f": "other", "c": 1, "v": {"s": "x"}}}],
                    "p": [{"p": 50, "v": {"b": True}}, {"p": 50, "v": {"b": False}}],
                },
            ],
        },
        "other": {"t": 1, "v": {"s": "x"}, "a": "Country", "p": [{"p": 100, "v": {"s": "y"}, "i": "v-y"}]},
    },
}


class TestConfig(unittest.TestCase):
    def test_valid_config(self):
        c = Config.from_dict(_valid_config)

        self.assertEqual(c.preferences.base_url, "https://cdn-global.configcat.com")
        self.assertEqual(c.preferences.redirect_mode, RedirectMode.NO)
        self.assertEqual(c.salt, "config-salt")
        self.assertEqual(len(c.segments), 1)
        self.assertEqual(c.segments[0].name, "Beta users")
        self.assertListEqual(list(c.settings), ["flag", "other"])

        flag = c.settings["flag"]
        self.assertEqual(flag.type, SettingType.BOOLEAN)
        self.assertEqual(flag.variation_id, "v-off")
        self.assertEqual(flag.config_salt, "config-salt")
        self.assertIs(flag.segments, c.segments)
        self.assertEqual(len(flag.targeting_rules), 2)

        r0, r1 = flag.targeting_rules
        self.assertFalse(r0.has_percentage_options())
        self.assertTrue(r1.has_percentage_options())
        (cond,) = r0.conditions
        self.assertIsInstance(cond, UserCondition)
        self.assertEqual(cond.comparator, UserComparator.TEXT_IS_ONE_OF)
        self.assertEqual(cond.comparison_value, ("a@x.com",))
        self.assertIsInstance(r1.conditions[0], SegmentCondition)
        self.assertIsInstance(r1.conditions[1], PrerequisiteFlagCondition)

        other = c.settings["other"]
        self.assertEqual(other.percentage_option_attribute, "Country")
        self.assertEqual(other.percentage_options[0].variation_id, "v-y")

    def test_from_json(self):
        c = Config.from_json(json.dumps(_valid_config))
        self.assertEqual(c.settings["other"].value, {"s": "x"})

    def test_empty_config(self):
        c = Config.from_dict({})
        self.assertIsNone(c.preferences)
        self.assertIsNone(c.salt)
        self.assertDictEqual(c.settings, {})

    def test_invalid_configs(self):
        cases = [
            {"f": []},
            {"f": {"a": {"v": {"b": True}}}},  # missing type
            {"f": {"a": {"t": 7, "v": {"b": True}}}},  # invalid type
            {"f": {"a": {"t": 0}}},  # missing value
            {"p": {"r": 3}},  # invalid redirect mode
            {"s": [{"n": "s", "r": []}]},  # empty segment
            {"f": {"a": {"t": 0, "v": {"b": True}, "r": [{"c": [{"u": {"a": "x", "c": 0}}]}]}}},  # no comparison value
            {"f": {"a": {"t": 0, "v": {"b": True}, "r": [{"c": [{"u": {"a": "x", "c": 0, "s": "y", "d": 1}}]}]}}},
            {"f": {"a": {"t": 0, "v": {"b": True}, "r": [{"c": [{"x": {}}]}]}}},  # unknown condition
        ]
        for c in cases:
            with self.subTest(c):
                with self.assertRaises(ValidationError):
                    Config.from_dict(c)

    def test_out_of_range_values_load(self):
        c = Config.from_dict(
            {
                "f": {
                    "a": {
                        "t": 0,
                        "v": {"b": True},
                        "r": [
                            {
                                "c": [
                                    {"u": {"a": "x", "c": 36, "s": "y"}},
                                    {"p": {"f": "b", "c": 2, "v": {"b": True}}},
                                    {"s": {"s": 0, "c": 5}},
                                ],
                                "s": {"v": {"b": False}},
                            }
                        ],
                    },
                    "b": {"t": 0, "v": {"b": True}, "p": [{"p": 101, "v": {"b": True}}, {"p": -1, "v": {"b": False}}]},
                }
            }
        )
        user, prerequisite, segment = c.settings["a"].targeting_rules[0].conditions
        self.assertEqual(user.comparator, 36)
        self.assertNotIsInstance(user.comparator, UserComparator)
        self.assertEqual(prerequisite.comparator, 2)
        self.assertEqual(segment.comparator, 5)
        self.assertListEqual([o.percentage for o in c.settings["b"].percentage_options], [101, -1])


class TestSettingValue(unittest.TestCase):
    def test_unwrap_value(self):
        cases = [
            ({"b": True}, SettingType.BOOLEAN, True),
            ({"s": "x"}, SettingType.STRING, "x"),
            ({"i": 5}, SettingType.INT, 5),
            ({"d": 1.5}, SettingType.DOUBLE, 1.5),
            ({"d": 2}, SettingType.DOUBLE, 2.0),
            (True, SettingType.UNKNOWN, True),
            (3, SettingType.UNKNOWN, 3),
        ]
        for v, t, expected in cases:
            with self.subTest((v, t)):
                self.assertEqual(unwrap_value(v, t), expected)

    def test_unwrap_invalid_value(self):
        cases = [
            ({"s": "x"}, SettingType.BOOLEAN),
            ({"b": True}, SettingType.INT),
            ({"i": 1.5}, SettingType.INT),
            ({"i": 2**53}, SettingType.INT),
            (None, SettingType.STRING),
            (None, SettingType.UNKNOWN),
            ([1], SettingType.UNKNOWN),
        ]
        for v, t in cases:
            with self.subTest((v, t)):
                with self.assertRaises(InvalidConfigModelError):
                    unwrap_value(v, t)
                self.assertIsNone(unwrap_value(v, t, ignore_if_invalid=True))

    def test_infer_value(self):
        self.assertEqual(infer_value({"b": False}), False)
        self.assertEqual(infer_value({"s": "a"}), "a")
        self.assertIsNone(infer_value({"s": "a", "b": True}))
        self.assertIsNone(infer_value({}))
        self.assertIsNone(infer_value("a"))

    def test_setting_from_value(self):
        s = Setting.from_value("abc")
        self.assertEqual(s.type, SettingType.UNKNOWN)
        self.assertEqual(s.inferred_type, SettingType.STRING)
        self.assertEqual(Setting.from_value(1).inferred_type, SettingType.DOUBLE)
        self.assertEqual(Setting.from_value(True).inferred_type, SettingType.BOOLEAN)


class TestProjectConfig(unittest.TestCase):
    def test_serialization_round_trip(self):
        config_json = json.dumps(_valid_config)
        cases = [
            ProjectConfig(config_json, Config.from_json(config_json), 1700000000123, '"etag-1"'),
            ProjectConfig(config_json, Config.from_json(config_json), 5, None),
            ProjectConfig(None, None, 1700000000123, None),
        ]
        for pc in cases:
            with self.subTest(pc):
                s = pc.serialize()
                pc2 = ProjectConfig.deserialize(s)
                self.assertEqual(pc2.timestamp, pc.timestamp)
                self.assertEqual(pc2.http_etag, pc.http_etag)
                self.assertEqual(pc2.config_json, pc.config_json)
                self.assertEqual(pc2.is_empty, pc.is_empty)
                self.assertEqual(pc2.serialize(), s)

    def test_serialization_format(self):
        pc = ProjectConfig('{"f":{}}', Config.from_dict({"f": {}}), 42, "e")
        self.assertEqual(pc.serialize(), '42\ne\n{"f":{}}')

    def test_invalid_serialized_values(self):
        cases = [
            ("", "fewer than expected"),
            ("42\netag", "fewer than expected"),
            ("abc\netag\n{}", "Invalid fetch time"),
            ("1_000\netag\n{}", "Invalid fetch time"),
            ("+5\netag\n{}", "Invalid fetch time"),
            (" 42\netag\n{}", "Invalid fetch time"),
            ("\netag\n{}", "Invalid fetch time"),
            ("42\netag\nnot json", "Invalid config JSON"),
            ('42\netag\n{"f": []}', "Invalid config JSON"),
        ]
        for s, msg in cases:
            with self.subTest(s):
                with self.assertRaisesRegex(ValueError, msg):
                    ProjectConfig.deserialize(s)
        self.assertEqual(ProjectConfig.deserialize("-5\n\n").timestamp, -5)

    def test_content_equals(self):
        a = ProjectConfig('{"f":{}}', None, 1, "etag")
        b = ProjectConfig('{ "f": {} }', None, 2, "etag")
        c = ProjectConfig('{"f":{}}', None, 3, "other")
        d = ProjectConfig('{"f":{}}', None, 4, None)
        e = ProjectConfig('{ "f": {} }', None, 4, None)

        self.assertTrue(ProjectConfig.content_equals(a, b))
        self.assertFalse(ProjectConfig.content_equals(a, c))
        self.assertTrue(ProjectConfig.content_equals(a, d))
        self.assertFalse(ProjectConfig.content_equals(b, d))
        self.assertTrue(ProjectConfig.content_equals(b, e))

    def test_expiry(self):
        now = ProjectConfig.generate_timestamp()
        self.assertTrue(ProjectConfig.EMPTY.is_expired(10**12))
        self.assertFalse(ProjectConfig(None, None, now, None).is_expired(60_000))
        self.assertTrue(ProjectConfig(None, None, now - 120_000, None).is_expired(60_000))

    def test_with_timestamp(self):
        pc = ProjectConfig('{"f":{}}', Config.from_dict({"f": {}}), 1, "e")
        pc2 = pc.with_timestamp(2)
        self.assertEqual(pc2.timestamp, 2)
        self.assertEqual(pc2.http_etag, "e")
        self.assertIs(pc2.config, pc.config)
        self.assertEqual(pc.timestamp, 1)
