"""
Static checks on the Streamlit entry scripts (they need a running server to execute).
"""
import ast
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


def _calls(path):
    tree = ast.parse(path.read_text(encoding="utf-8"))
    for node in ast.walk(tree):
        if isinstance(node, ast.Call):
            f = node.func
            name = f.attr if isinstance(f, ast.Attribute) else getattr(f, "id", None)
            yield name, node


def test_app_configures_logging_before_running_a_page():
    lines = {}
    for name, node in _calls(ROOT / "app.py"):
        lines.setdefault(name, node.lineno)
    assert "configure_logging" in lines
    assert lines["configure_logging"] < lines["navigation"]


def test_every_navigation_entry_exists():
    for name, node in _calls(ROOT / "app.py"):
        if name == "Page":
            assert (ROOT / node.args[0].value).exists(), node.args[0].value


def test_page_titles_are_plain():
    for page in sorted((ROOT / "pages").glob("*.py")):
        for name, node in _calls(page):
            if name == "title":
                assert "demo" not in node.args[0].value.lower(), page.name
