import unittest

from src.flagsync.evaluate_log import EvaluateLogBuilder, format_string_list, number_to_string, value_to_string
from src.flagsync.model import UserComparator, UserCondition


class TestNumberToString(unittest.TestCase):
    def test_number_to_string(self):
        cases = [
            (0, "0"),
            (-5, "-5"),
            (1.0, "1"),
            (1.5, "1.5"),
            (-0.25, "-0.25"),
            (1e20, "100000000000000000000"),
            (1e21, "1e+21"),
            (1.5e-7, "1.5e-7"),
            (1e-6, "0.000001"),
            (float("nan"), "NaN"),
            (float("inf"), "Infinity"),
            (float("-inf"), "-Infinity"),
        ]
        for n, expected in cases:
            with self.subTest(n):
                self.assertEqual(number_to_string(n), expected)

    def test_value_to_string(self):
        self.assertEqual(value_to_string(True), "true")
        self.assertEqual(value_to_string("x"), "x")
        self.assertEqual(value_to_string(2.0), "2")
        self.assertEqual(value_to_string(None), "<invalid value>")
        self.assertEqual(value_to_string([1]), "<invalid value>")


class TestConditionFormatting(unittest.TestCase):
    def _format(self, comparator, comparison_value, attribute="Email"):
        return str(EvaluateLogBuilder().append_user_condition(UserCondition(attribute, comparator, comparison_value)))

    def test_user_conditions(self):
        cases = [
            (UserComparator.TEXT_IS_ONE_OF, ("a", "b"), "User.Email IS ONE OF ['a', 'b']"),
            (UserComparator.TEXT_EQUALS, "a", "User.Email EQUALS 'a'"),
            (UserComparator.SEMVER_LESS, "1.0.0", "User.Email < '1.0.0'"),
            (UserComparator.NUMBER_EQUALS, 5, "User.Email = '5'"),
            (UserComparator.NUMBER_GREATER, 2.5, "User.Email > '2.5'"),
            (UserComparator.DATETIME_BEFORE, 1700000000, "User.Email BEFORE '1700000000' (2023-11-14T22:13:20.000Z UTC)"),
            (UserComparator.SENSITIVE_TEXT_EQUALS, "abc", "User.Email EQUALS '<hashed value>'"),
            (UserComparator.SENSITIVE_TEXT_IS_ONE_OF, ("a",), "User.Email IS ONE OF [<1 hashed value>]"),
            (UserComparator.SENSITIVE_ARRAY_CONTAINS_ANY_OF, ("a", "b", "c"), "User.Email ARRAY CONTAINS ANY OF [<3 hashed values>]"),
            (UserComparator.TEXT_EQUALS, None, "User.Email EQUALS '<invalid value>'"),
            (UserComparator.NUMBER_EQUALS, "5", "User.Email = '<invalid value>'"),
        ]
        for comparator, comparison_value, expected in cases:
            with self.subTest((comparator.name, comparison_value)):
                self.assertEqual(self._format(comparator, comparison_value), expected)

    def test_long_list_truncated(self):
        values = tuple(str(i) for i in range(12))
        self.assertEqual(
            self._format(UserComparator.TEXT_IS_ONE_OF, values),
            "User.Email IS ONE OF ['0', '1', '2', '3', '4', '5', '6', '7', '8', '9', ... <2 more values>]",
        )
        values = tuple(str(i) for i in range(11))
        self.assertTrue(self._format(UserComparator.TEXT_IS_ONE_OF, values).endswith("... <1 more value>]"))

    def test_format_string_list(self):
        self.assertEqual(format_string_list(["a", "b"]), "'a', 'b'")
        self.assertEqual(format_string_list(["a", "b"], separator=" -> "), "'a' -> 'b'")
        self.assertEqual(format_string_list([]), "")


class TestEvaluateLogBuilder(unittest.TestCase):
    def test_indentation(self):
        b = EvaluateLogBuilder()
        b.append("root").increase_indent().new_line("child").increase_indent().new_line("grandchild")
        b.decrease_indent().new_line("child2").reset_indent().new_line("root2")
        self.assertEqual(str(b), "root\n  child\n    grandchild\n  child2\nroot2")

    def test_condition_consequence(self):
        self.assertEqual(str(EvaluateLogBuilder().append_condition_consequence(True)), " => true")
        self.assertEqual(
            str(EvaluateLogBuilder().append_condition_consequence(False)),
            " => false, skipping the remaining AND conditions",
        )
