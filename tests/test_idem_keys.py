"""Tests for idempotency key generation."""

from dataclasses import replace

from infrachestra.idem_keys import KEY_PREFIX, canonical_json, desired_state_key, short_key


class TestCanonicalJson:

    def test_sorted_and_compact(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'


class TestDesiredStateKey:

    def test_format(self):
        key = desired_state_key("command", {"region": "us-east-1"})
        assert key.startswith(KEY_PREFIX)
        assert len(key) == len(KEY_PREFIX) + 64

    def test_deterministic_across_key_order(self):
        a = desired_state_key("command", {"region": "us-east-1", "name": "demo"}, {"command": ["x"]})
        b = desired_state_key("command", {"name": "demo", "region": "us-east-1"}, {"command": ["x"]})
        assert a == b

    def test_inputs_change_key(self):
        assert desired_state_key("command", {"cidr": "10.0.0.0/16"}) != desired_state_key("command", {"cidr": "10.1.0.0/16"})

    def test_handler_changes_key(self):
        assert desired_state_key("command", {}) != desired_state_key("noop", {})

    def test_apply_params_change_key(self):
        assert desired_state_key("command", {}, {"command": ["a"]}) != desired_state_key("command", {}, {"command": ["b"]})

    def test_step_key_ignores_label_and_dependencies(self, make_step):
        step = make_step("network", cidr="10.0.0.0/16")
        relabelled = replace(step, label="VPC", depends_on=("github-oidc",))
        assert step.idempotency_key == relabelled.idempotency_key


class TestShortKey:

    def test_strips_prefix(self):
        assert short_key("sha256:0123456789abcdef") == "0123456789ab"

    def test_empty(self):
        assert short_key(None) == "-"
