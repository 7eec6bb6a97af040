"""
变量解析测试
"""

from workflow_automation.core import VariableResolver


class TestVariableResolver:
    """VariableResolver 测试"""

    def setup_method(self):
        self.resolver = VariableResolver()

    def test_replaces_known_variables(self):
        result = self.resolver.resolve("Hello ${name}, you have ${count} messages", {"name": "Ann", "count": 3})
        assert result == "Hello Ann, you have 3 messages"

    def test_unknown_placeholder_is_left_verbatim(self):
        assert self.resolver.resolve("${a}-${missing}", {"a": 1}) == "1-${missing}"

    def test_non_string_template_passes_through(self):
        assert self.resolver.resolve(42, {"x": 1}) == 42
        assert self.resolver.resolve(None, {}) is None

    def test_booleans_and_null_are_stringified_like_json(self):
        result = self.resolver.resolve("${on}/${off}/${nothing}", {"on": True, "off": False, "nothing": None})
        assert result == "true/false/null"

    def test_whitespace_inside_braces_is_ignored(self):
        assert self.resolver.resolve("${ name }", {"name": "x"}) == "x"

    def test_no_recursive_expansion(self):
        result = self.resolver.resolve("${a}", {"a": "${b}", "b": "deep"})
        assert result == "${b}"
