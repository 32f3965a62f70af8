import unittest

from prometheus_client import REGISTRY

from src.flagsync import (
    Client,
    ClientCacheState,
    EvaluationErrorCode,
    FlagOverrides,
    Hooks,
    ManualPoll,
    Options,
    OverrideBehaviour,
    RefreshErrorCode,
    User,
)
from src.flagsync.fetcher import ConfigFetcher, FetchResponse


_sdk_key = "a" * 22 + "/" + "b" * 22

_remote_config = """{
    "p": {"s": "salt"},
    "f": {
        "flag": {
            "t": 0,
            "v": {"b": false},
            "i": "v-off",
            "r": [{"c": [{"u": {"a": "Email", "c": 0, "l": ["a@x.com"]}}], "s": {"v": {"b": true}, "i": "v-on"}}]
        },
        "text": {"t": 1, "v": {"s": "remote"}, "i": "v-remote"},
        "broken": {"t": 1, "v": {"s": "x"}, "p": [{"p": 0, "v": {"s": "y"}}]}
    }
}"""


class StaticFetcher(ConfigFetcher):
    def __init__(self, response=None):
        self.response = response or FetchResponse(200, "OK", '"e1"', _remote_config)
        self.count = 0

    async def fetch(self, request):
        self.count += 1
        return self.response


class TestClientConstruction(unittest.IsolatedAsyncioTestCase):
    async def test_sdk_key_validation(self):
        cases = [
            (_sdk_key, None, True),
            ("configcat-sdk-1/" + "a" * 22 + "/" + "b" * 22, None, True),
            ("configcat-proxy/my-key", "https://proxy.example.com", True),
            ("configcat-proxy/my-key", None, False),
            ("configcat-proxy/", "https://proxy.example.com", False),
            ("a" * 21 + "/" + "b" * 22, None, False),
            ("configcat-sdk-2/" + "a" * 22 + "/" + "b" * 22, None, False),
            ("key", None, False),
            ("", None, False),
        ]
        for sdk_key, base_url, valid in cases:
            with self.subTest(sdk_key=sdk_key, base_url=base_url):
                options = Options(polling_mode=ManualPoll(), base_url=base_url, fetcher=StaticFetcher())
                if valid:
                    Client(sdk_key, options).dispose()
                else:
                    with self.assertRaises(ValueError):
                        Client(sdk_key, options)

    async def test_local_only_skips_key_format(self):
        client = Client("local", Options(flag_overrides=FlagOverrides({"a": 1}, OverrideBehaviour.LOCAL_ONLY)))
        self.assertEqual(await client.evaluate("a", 0), 1)

    async def test_invalid_options(self):
        with self.assertRaises(TypeError):
            Client(_sdk_key, {"polling_mode": ManualPoll()})
        with self.assertRaises(TypeError):
            Options(polling_mode="auto")
        with self.assertRaises(ValueError):
            Options(request_timeout_seconds=0)


class ClientTestCase(unittest.IsolatedAsyncioTestCase):
    def make_client(self, fetcher=None, **options):
        self.fetcher = fetcher or StaticFetcher()
        options.setdefault("polling_mode", ManualPoll())
        client = Client(_sdk_key, Options(fetcher=self.fetcher, **options))
        self.addCleanup(client.dispose)
        return client


class TestEvaluation(ClientTestCase):
    async def asyncSetUp(self):
        self.evaluated = []
        self.client = self.make_client(hooks=Hooks().on("flag_evaluated", self.evaluated.append))
        result = await self.client.force_refresh()
        self.assertTrue(result.is_success)

    async def test_evaluate(self):
        self.assertIs(await self.client.evaluate("flag", False), False)
        self.assertIs(await self.client.evaluate("flag", False, User("id", email="a@x.com")), True)
        self.assertEqual(await self.client.evaluate("text", "default"), "remote")
        self.assertEqual(await self.client.evaluate("text", None), "remote")

    async def test_detailed_evaluate(self):
        d = await self.client.detailed_evaluate("flag", False, User("id", email="a@x.com"))
        self.assertIs(d.value, True)
        self.assertEqual(d.variation_id, "v-on")
        self.assertFalse(d.is_default_value)
        self.assertIsNotNone(d.fetch_time)
        self.assertIsNotNone(d.matched_targeting_rule)
        self.assertEqual(self.evaluated, [d])

    async def test_evaluation_errors_return_default(self):
        cases = [
            ("missing", "default", EvaluationErrorCode.SETTING_KEY_MISSING),
            ("text", 42, EvaluationErrorCode.SETTING_VALUE_TYPE_MISMATCH),
            ("broken", "default", EvaluationErrorCode.INVALID_CONFIG_MODEL),
        ]
        for key, default_value, error_code in cases:
            with self.subTest(key):
                with self.assertLogs("src.flagsync", level="ERROR"):
                    d = await self.client.detailed_evaluate(key, default_value, User("id"))
                self.assertEqual(d.value, default_value)
                self.assertTrue(d.is_default_value)
                self.assertEqual(d.error_code, error_code)
                self.assertIsNotNone(d.error_message)

    async def test_invalid_arguments(self):
        cases = [
            (lambda: self.client.evaluate(1, False), TypeError),
            (lambda: self.client.evaluate("", False), ValueError),
            (lambda: self.client.evaluate("flag", [False]), TypeError),
            (lambda: self.client.evaluate("flag", False, {"Identifier": "x"}), TypeError),
            (lambda: self.client.detailed_evaluate_all("user"), TypeError),
            (lambda: self.client.get_key_and_value(""), ValueError),
        ]
        for i, (call, error) in enumerate(cases):
            with self.subTest(i):
                with self.assertRaises(error):
                    await call()

    async def test_evaluate_all(self):
        with self.assertLogs("src.flagsync", level="ERROR"):
            values = await self.client.evaluate_all(User("id", email="a@x.com"))
        self.assertDictEqual(values, {"flag": True, "text": "remote", "broken": None})
        self.assertEqual(len(self.evaluated), 3)

        with self.assertLogs("src.flagsync", level="ERROR"):
            details = await self.client.detailed_evaluate_all(User("id"))
        self.assertEqual(details[2].error_code, EvaluationErrorCode.INVALID_CONFIG_MODEL)

    async def test_get_all_keys(self):
        self.assertListEqual(await self.client.get_all_keys(), ["flag", "text", "broken"])

    async def test_get_key_and_value(self):
        self.assertEqual(await self.client.get_key_and_value("v-on"), ("flag", True))
        self.assertEqual(await self.client.get_key_and_value("v-remote"), ("text", "remote"))
        with self.assertLogs("src.flagsync", level="ERROR"):
            self.assertIsNone(await self.client.get_key_and_value("nope"))

    async def test_default_user(self):
        self.client.set_default_user(User("id", email="a@x.com"))
        self.assertIs(await self.client.evaluate("flag", False), True)
        # An explicit user wins over the default one.
        self.assertIs(await self.client.evaluate("flag", False, User("id", email="b@x.com")), False)

        self.client.clear_default_user()
        with self.assertLogs("src.flagsync", level="WARNING"):
            self.assertIs(await self.client.evaluate("flag", False), False)

        with self.assertRaises(TypeError):
            self.client.set_default_user("a@x.com")

    async def test_evaluation_metrics(self):
        labels = {"key": "text", "error_code": "0"}
        before = REGISTRY.get_sample_value("flagsync_evaluation_seconds_count", labels) or 0
        await self.client.evaluate("text", "")
        self.assertEqual(REGISTRY.get_sample_value("flagsync_evaluation_seconds_count", labels), before + 1)


class TestNoConfig(ClientTestCase):
    async def test_config_not_available(self):
        client = self.make_client()
        self.assertEqual(await client.wait_for_ready(), ClientCacheState.NO_FLAG_DATA)
        self.assertEqual(client.get_cache_state(), ClientCacheState.NO_FLAG_DATA)

        with self.assertLogs("src.flagsync", level="ERROR"):
            d = await client.detailed_evaluate("flag", True)
        self.assertIs(d.value, True)
        self.assertEqual(d.error_code, EvaluationErrorCode.CONFIG_JSON_NOT_AVAILABLE)
        self.assertIsNone(d.fetch_time)

        with self.assertLogs("src.flagsync", level="ERROR"):
            self.assertDictEqual(await client.evaluate_all(), {})
        with self.assertLogs("src.flagsync", level="ERROR"):
            self.assertListEqual(await client.get_all_keys(), [])
        self.assertEqual(self.fetcher.count, 0)

    async def test_failed_refresh(self):
        client = self.make_client(StaticFetcher(FetchResponse(403, "Forbidden")))
        with self.assertLogs("src.flagsync", level="ERROR"):
            result = await client.force_refresh()
        self.assertEqual(result.error_code, RefreshErrorCode.INVALID_SDK_KEY)


class TestOverrides(ClientTestCase):
    _values = {"text": "local", "extra": 1}

    async def test_behaviours(self):
        cases = [
            (OverrideBehaviour.LOCAL_OVER_REMOTE, {"flag": False, "text": "local", "extra": 1}),
            (OverrideBehaviour.REMOTE_OVER_LOCAL, {"flag": False, "text": "remote", "extra": 1}),
        ]
        for behaviour, expected in cases:
            with self.subTest(behaviour.name):
                client = self.make_client(flag_overrides=FlagOverrides(self._values, behaviour))
                await client.force_refresh()
                for key, value in expected.items():
                    self.assertEqual(await client.evaluate(key, None), value)

    async def test_local_only(self):
        hooks = Hooks()
        ready = []
        hooks.on("client_ready", ready.append)
        client = self.make_client(flag_overrides=FlagOverrides(self._values, OverrideBehaviour.LOCAL_ONLY), hooks=hooks)

        self.assertListEqual(ready, [ClientCacheState.HAS_LOCAL_OVERRIDE_FLAG_DATA_ONLY])
        self.assertEqual(await client.wait_for_ready(), ClientCacheState.HAS_LOCAL_OVERRIDE_FLAG_DATA_ONLY)
        self.assertEqual(client.get_cache_state(), ClientCacheState.HAS_LOCAL_OVERRIDE_FLAG_DATA_ONLY)
        self.assertEqual(await client.evaluate("text", ""), "local")
        self.assertEqual(await client.evaluate("extra", 0), 1)
        self.assertEqual(await client.evaluate("extra", 0.5), 1)
        with self.assertLogs("src.flagsync", level="ERROR"):
            d = await client.detailed_evaluate("flag", False)
        self.assertEqual(d.error_code, EvaluationErrorCode.SETTING_KEY_MISSING)

        result = await client.force_refresh()
        self.assertEqual(result.error_code, RefreshErrorCode.LOCAL_ONLY_CLIENT)
        self.assertTrue(client.is_offline)
        with self.assertLogs("src.flagsync", level="WARNING"):
            client.set_online()
        self.assertEqual(self.fetcher.count, 0)

    async def test_type_mismatch(self):
        client = self.make_client(flag_overrides=FlagOverrides({"text": "local"}, OverrideBehaviour.LOCAL_ONLY))
        with self.assertLogs("src.flagsync", level="ERROR"):
            d = await client.detailed_evaluate("text", False)
        self.assertEqual(d.error_code, EvaluationErrorCode.SETTING_VALUE_TYPE_MISMATCH)
        self.assertIs(d.value, False)

    async def test_overrides_with_rules(self):
        overrides = FlagOverrides.from_config_dict(
            {
                "f": {
                    "beta": {
                        "t": 0,
                        "v": {"b": False},
                        "r": [{"c": [{"u": {"a": "Country", "c": 0, "l": ["HU"]}}], "s": {"v": {"b": True}}}],
                    }
                }
            },
            OverrideBehaviour.LOCAL_ONLY,
        )
        client = self.make_client(flag_overrides=overrides)
        self.assertIs(await client.evaluate("beta", False, User("id", country="HU")), True)
        self.assertIs(await client.evaluate("beta", False, User("id", country="DE")), False)

    def test_invalid_values(self):
        with self.assertRaises(TypeError):
            FlagOverrides({"a": [1]}, OverrideBehaviour.LOCAL_ONLY)
        with self.assertRaises(TypeError):
            FlagOverrides({1: True}, OverrideBehaviour.LOCAL_ONLY)
        with self.assertRaises(ValueError):
            FlagOverrides({}, 7)


class TestLifecycle(ClientTestCase):
    async def test_offline(self):
        client = self.make_client(offline=True)
        self.assertTrue(client.is_offline)
        with self.assertLogs("src.flagsync", level="WARNING"):
            result = await client.force_refresh()
        self.assertEqual(result.error_code, RefreshErrorCode.OFFLINE_CLIENT)

        client.set_online()
        self.assertFalse(client.is_offline)
        self.assertTrue((await client.force_refresh()).is_success)
        self.assertEqual(client.get_cache_state(), ClientCacheState.HAS_CACHED_FLAG_DATA_ONLY)

        client.set_offline()
        self.assertTrue(client.is_offline)
        # Evaluations keep using the cached config.
        self.assertEqual(await client.evaluate("text", ""), "remote")

    async def test_hooks(self):
        fetched = []
        changed = []
        client = self.make_client()
        client.hooks.on("config_fetched", lambda result, by_user: fetched.append(by_user))
        client.hooks.on("config_changed", changed.append)

        await client.force_refresh()
        self.assertListEqual(fetched, [True])
        self.assertEqual(len(changed), 1)
        self.assertIn("text", changed[0].settings)

    async def test_dispose(self):
        evaluated = []
        client = self.make_client()
        client.hooks.on("flag_evaluated", evaluated.append)
        client.dispose()
        with self.assertLogs("src.flagsync", level="ERROR"):
            await client.evaluate("text", "")
        self.assertListEqual(evaluated, [])
        self.assertTrue(client.is_offline)


class TestHooks(unittest.TestCase):
    def test_on_once_off(self):
        calls = []
        hooks = Hooks()

        def listener(x):
            calls.append(("on", x))

        hooks.on("config_changed", listener)
        hooks.once("config_changed", lambda x: calls.append(("once", x)))
        hooks.emit("config_changed", 1)
        hooks.emit("config_changed", 2)
        hooks.off("config_changed", listener)
        hooks.emit("config_changed", 3)
        self.assertListEqual(calls, [("on", 1), ("once", 1), ("on", 2)])

    def test_listener_errors_logged(self):
        calls = []
        hooks = Hooks()
        hooks.on("client_ready", lambda state: 1 / 0)
        hooks.on("client_ready", calls.append)
        with self.assertLogs("src.flagsync.hooks", level="ERROR") as cm:
            hooks.emit("client_ready", ClientCacheState.NO_FLAG_DATA)
        self.assertIn("Error in client_ready listener", cm.output[0])
        self.assertListEqual(calls, [ClientCacheState.NO_FLAG_DATA])

    def test_unknown_event(self):
        with self.assertRaises(ValueError):
            Hooks().on("config_updated", print)
