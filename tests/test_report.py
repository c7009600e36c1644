import json

from symvm.bitvec import Word
from symvm.explorer import Explorer
from symvm.expr import ExprArena
from symvm.report import (
    data_to_json,
    finding_to_dict,
    findings_to_json,
    summary_to_dict,
    witness_to_dict,
    word_to_json,
)
from symvm.utils import event_topic, hexify


def test_word_to_json():
    arena = ExprArena()
    assert word_to_json(Word(1)) == "0x" + "0" * 63 + "1"
    assert word_to_json(Word(arena.var("x"))) == "x"


def test_data_to_json():
    arena = ExprArena()
    assert data_to_json([]) == "0x"
    assert data_to_json([0x12, 0x34]) == "0x1234"

    x = arena.var("x", 8)
    assert data_to_json([0x12, x]) == ["0x12", "x"]


def test_witness_to_dict():
    assert witness_to_dict(None) is None

    # large values are rendered as strings
    big = (1 << 256) - 1
    assert witness_to_dict({"p1": big, "p0": 7}) == {
        "p0": {"decimal": "7", "hex": hexify(7)},
        "p1": {"decimal": str(big), "hex": "0x" + "f" * 64},
    }


def test_findings_to_json(args, process_and):
    exploration = Explorer(args).explore(process_and)
    findings = list(exploration)

    data = json.loads(findings_to_json(findings))
    assert [d["kind"] for d in data] == ["flagged-event-reached", "reverted"]

    flagged = data[0]
    assert flagged == finding_to_dict(findings[0])
    assert flagged["confirmed"] is True
    assert flagged["reason"] == "event Bug(uint256)"
    assert flagged["path_id"] == findings[0].path_id
    assert 201 <= int(flagged["witness"]["p0"]["decimal"]) <= 209
    assert flagged["smtlib"].startswith("(set-logic QF_UFBV)")
    assert len(flagged["path"]) == len(findings[0].path)

    (log,) = flagged["logs"]
    assert log["topics"] == [hexify(event_topic("Bug(uint256)"))]
    # the logged argument is symbolic
    assert isinstance(log["data"], list)
    assert len(log["data"]) == 32

    reverted = data[1]
    assert reverted["output"] == "0x"


def test_summary_to_dict(args, process_and):
    exploration = Explorer(args).explore(process_and)
    list(exploration)

    summary = summary_to_dict(exploration)
    assert summary["status"] == "complete"
    assert summary["stop_reason"] is None
    assert summary["findings"] == {"flagged-event-reached": 1, "reverted": 1}
    assert summary["branches"] == 1
    assert summary["evicted"] == 0
    json.dumps(summary)
