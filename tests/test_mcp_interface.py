"""Tests for the MCP interface helpers."""

from coachmem import mcp_interface
from coachmem.models.core import Person


class TestHelpers:
    def test_people_skips_incomplete_entries(self):
        people = mcp_interface._people([{'id': 'p-sarah', 'name': 'Sarah Lopez', 'role': 'PM'},
                                        {'id': 'p-x', 'name': ''},
                                        {'name': 'No Id'}])

        assert people == [Person(id='p-sarah', name='Sarah Lopez', role='PM')]

    def test_people_none(self):
        assert mcp_interface._people(None) == []

    def test_engine_is_built_once(self, monkeypatch):
        built = []
        monkeypatch.setattr(mcp_interface, '_engine', None)
        monkeypatch.setattr(mcp_interface, 'ContextEngine', lambda: built.append(1) or object())

        first = mcp_interface.get_engine()

        assert mcp_interface.get_engine() is first
        assert built == [1]
