"""Tests for markdown interpolation and bindings."""

import logging

from cellflow import MarkdownBinding, ReactiveStore, extract_variables, render_markdown_with_values
from cellflow.markdown import PLACEHOLDER


class TestRender:
    def test_plain_value(self):
        assert render_markdown_with_values("Total: {{total}}", {"total": 42}) == "Total: 42"

    def test_missing_value_renders_placeholder(self):
        assert render_markdown_with_values("{{ nope }}", {}) == PLACEHOLDER

    def test_currency(self):
        text = render_markdown_with_values("{{ revenue | currency }}", {"revenue": 1234.5})
        assert text == "$1,234.50"

    def test_negative_currency(self):
        assert render_markdown_with_values("{{x|currency}}", {"x": -3}) == "-$3.00"

    def test_round_with_decimals(self):
        assert render_markdown_with_values("{{ x | round, 2 }}", {"x": 3.14159}) == "3.14"
        assert render_markdown_with_values("{{ x | round }}", {"x": 2.6}) == "3"

    def test_percent(self):
        assert render_markdown_with_values("{{ rate | percent }}", {"rate": 0.125}) == "12.5%"

    def test_unknown_filter_falls_back(self, caplog):
        with caplog.at_level(logging.WARNING, logger="cellflow.markdown"):
            text = render_markdown_with_values("{{ x | shout }}", {"x": "hi"})
        assert text == "hi"
        assert "Unknown filter: shout" in caplog.text

    def test_filter_on_non_number_falls_back(self):
        assert render_markdown_with_values("{{ x | currency }}", {"x": "n/a"}) == "n/a"


class TestExtract:
    def test_variables_in_first_use_order(self):
        content = "{{ b }} and {{a|currency}} then {{ b | round, 1 }}"
        assert extract_variables(content) == ["b", "a"]


class TestBinding:
    def test_renders_and_rerenders(self):
        store = ReactiveStore()
        store.define("total", 10)
        rendered = []
        binding = MarkdownBinding(store, "Total: {{ total | currency }}", rendered.append)
        assert binding.rendered == "Total: $10.00"
        store.set("total", 12)
        assert rendered == ["Total: $10.00", "Total: $12.00"]

    def test_variable_defined_later(self):
        store = ReactiveStore()
        binding = MarkdownBinding(store, "{{ later }}")
        assert binding.rendered == PLACEHOLDER
        store.set("later", "here")
        assert binding.rendered == "here"

    def test_dispose(self):
        store = ReactiveStore()
        store.define("x", 1)
        binding = MarkdownBinding(store, "{{ x }}")
        binding.dispose()
        store.set("x", 2)
        assert binding.rendered == "1"
