import json

import pytest
from pydantic import ValidationError

from careguide.catalog import (
    BRUSHING_TEETH,
    BRUSHING_TEETH_CHECK,
    Step,
    Task,
    get_task,
    load_catalog,
    load_task,
)


def test_brushing_task_steps_and_actions():
    task = get_task("brushing-teeth")
    assert [s.id for s in task.steps] == [f"step-{i}" for i in range(1, 8)]
    assert task.steps[0].action == "pickup_toothbrush"
    assert task.steps[4].action == "brush_teeth"
    assert task.steps[5].action == "brush_teeth"
    assert task.steps[6].action == "rinse_mouth"


def test_step_policy_comes_from_action_category():
    brush = BRUSHING_TEETH.steps[4].policy
    assert brush.target_label == "toothbrush"
    assert brush.boosted_increment == 25
    # unknown category falls back to "any evidence present"
    rinse = BRUSHING_TEETH.steps[6].policy
    assert rinse.source == "any"
    assert rinse.positive_increment == 10


def test_attempt_caps():
    caps = [BRUSHING_TEETH_CHECK.attempt_cap(i) for i in range(len(BRUSHING_TEETH_CHECK.steps))]
    assert caps == [3, 3, 3, 6, 6, 3]
    assert BRUSHING_TEETH.attempt_cap(0) == 12

    task = Task(id="t", title="T", steps=(Step(id="a", instruction="Do it"),))
    assert task.attempt_cap(0) == 3


def test_repetition_seconds():
    assert BRUSHING_TEETH.repetition_seconds(0) == 15
    assert BRUSHING_TEETH.repetition_seconds(4) == 20
    assert BRUSHING_TEETH.repetition_seconds(0, default=30) == 30
    assert BRUSHING_TEETH.repetition_seconds(4, default=30) == 20


def test_narration_falls_back_to_instruction():
    s = Step(id="a", instruction="Wash your hands")
    assert s.narration == "Wash your hands"
    assert BRUSHING_TEETH.steps[0].narration.startswith("Let's start")


def test_duplicate_step_ids_rejected():
    with pytest.raises(ValidationError):
        Task(
            id="t",
            title="T",
            steps=(Step(id="a", instruction="one"), Step(id="a", instruction="two")),
        )


def test_task_needs_steps():
    with pytest.raises(ValidationError):
        Task(id="t", title="T", steps=())


def test_tasks_are_immutable():
    with pytest.raises(ValidationError):
        BRUSHING_TEETH.steps[0].instruction = "changed"


def test_get_task_unknown():
    with pytest.raises(KeyError):
        get_task("nope")


def test_load_task_and_catalog(tmp_path):
    data = {
        "id": "wash-hands",
        "title": "Washing Hands",
        "steps": [
            {"id": "s1", "instruction": "Turn on the tap", "max_attempts": 4},
            {"id": "s2", "instruction": "Use soap", "action": "edge_check"},
        ],
    }
    (tmp_path / "wash.json").write_text(json.dumps(data), encoding="utf-8")

    task = load_task(tmp_path / "wash.json")
    assert task.attempt_cap(0) == 4
    assert task.steps[1].policy.source == "edges"

    catalog = load_catalog(tmp_path)
    assert "wash-hands" in catalog
    assert "brushing-teeth" in catalog


def test_load_catalog_missing_dir(tmp_path):
    catalog = load_catalog(tmp_path / "missing")
    assert set(catalog) == {"brushing-teeth", "brushing-teeth-check"}
