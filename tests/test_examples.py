# tests/test_examples.py
"""
The shipped example patterns and dump must stay usable.
"""

from pathlib import Path

from rpl.driver import Analysis, AnalysisConfig
from rpl.library import load_library
from rpl_mir.loader import load_dump

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"


def test_example_patterns_load_cleanly():
    library, errors = load_library([EXAMPLES / "patterns"])
    assert errors == []
    assert sorted(library.names()) == [
        "dead-store",
        "raw-pointer-read",
        "use-after-drop",
        "use-after-storage-dead",
    ]


def test_example_dump_report():
    library, _ = load_library([EXAMPLES / "patterns"])
    dump = load_dump(EXAMPLES / "mir" / "demo.mir.json")
    report = Analysis(library, AnalysisConfig(executor="serial")).run([dump])
    assert [(str(d.location), d.pattern) for d in report.diagnostics] == [
        ("src/drop.rs:10:13", "use-after-drop"),
        ("src/raw.rs:5:13", "raw-pointer-read"),
        ("src/stale.rs:4:13", "use-after-storage-dead"),
    ]
    assert [p.function for p in report.problems] == ["demo::extern_shim"]
