import pytest

from bonsai.data.initial_story import initial_story
from bonsai.schemas.story import (
    DEFAULT_SCENE_LABEL,
    DecisionLine,
    FlatLine,
    GameStructure,
    JumpLine,
    LineType,
    NarrativeLine,
    Option,
    Scene,
)
from bonsai.services.notation import (
    detect_prefix,
    find_dangling_jumps,
    lines_to_structure,
    structure_to_lines,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("# FIRE", (LineType.SCENE, "FIRE")),
        ("   ? What now?", (LineType.DECISION, "What now?")),
        ("* Ride a bike, cycle", (LineType.OPTION, "Ride a bike, cycle")),
        ("↗ END", (LineType.JUMP, "END")),
        ("! Be terse", (LineType.PROMPT, "Be terse")),
        ("- The fire burns.", (LineType.NARRATIVE, "The fire burns.")),
        ("  plain words  ", (LineType.NARRATIVE, "plain words")),
        ("-no space", (LineType.NARRATIVE, "-no space")),
        ("", (LineType.NARRATIVE, "")),
    ],
)
def test_detect_prefix(text, expected):
    assert detect_prefix(text) == expected


def test_detect_prefix_is_stable_on_rendered_lines(fire_game):
    for line in structure_to_lines(fire_game):
        kind, content = detect_prefix(line.text)
        marker = line.text[: len(line.text) - len(content)]
        assert detect_prefix(f"{marker}{content}") == (kind, content)


def test_round_trip_preserves_structure_and_ids(fire_game):
    flat = structure_to_lines(fire_game)
    assert lines_to_structure(flat).model_dump() == fire_game.model_dump()


def test_round_trip_keeps_scene_level_prompts():
    assert lines_to_structure(structure_to_lines(initial_story)).model_dump() == initial_story.model_dump()


def test_render_indents_options_and_their_lines(fire_game):
    flat = structure_to_lines(fire_game)
    by_id = {line.id: line for line in flat}
    assert flat[0] == FlatLine(id="scene-FIRE", text="# FIRE", indent=0)
    assert by_id["d-what"].indent == 0
    assert by_id["o-bike"] == FlatLine(id="o-bike", text="* Ride a bike", indent=1)
    assert by_id["j-bike"] == FlatLine(id="j-bike", text="↗ BIKE", indent=2)
    assert by_id["n-okay"].indent == 0


def test_empty_document():
    structure = lines_to_structure([])
    assert structure.scenes == []
    assert structure.start_scene == DEFAULT_SCENE_LABEL


def test_lines_before_first_scene_are_dropped_except_prompts(make_lines):
    structure = lines_to_structure(make_lines([
        "! Keep it short",
        "- orphan narrative",
        "# A",
        "- hello",
    ]))
    assert structure.start_scene == "A"
    lines = structure.scenes[0].lines
    assert [line.type for line in lines] == ["prompt", "narrative"]
    assert lines[0].text == "Keep it short"
    assert lines[1].text == "hello"


def test_explicit_empty_scene_is_kept(make_lines):
    structure = lines_to_structure(make_lines(["# A", "# B", "- b"]))
    assert structure.scene_labels() == ["A", "B"]
    assert structure.scene("A").lines == []


def test_explicit_empty_start_scene_is_kept(make_lines):
    structure = lines_to_structure(make_lines([f"# {DEFAULT_SCENE_LABEL}", "# A", "- a", f"↗ {DEFAULT_SCENE_LABEL}"]))
    assert structure.scene_labels() == [DEFAULT_SCENE_LABEL, "A"]
    assert structure.start_scene == DEFAULT_SCENE_LABEL
    assert find_dangling_jumps(structure) == []


def test_round_trip_with_empty_start_scene():
    structure = GameStructure(
        start_scene=DEFAULT_SCENE_LABEL,
        scenes=[
            Scene(label=DEFAULT_SCENE_LABEL, lines=[]),
            Scene(label="A", lines=[NarrativeLine(id="n1", text="a"), JumpLine(id="j1", target=DEFAULT_SCENE_LABEL)]),
        ],
    )
    assert lines_to_structure(structure_to_lines(structure)).model_dump() == structure.model_dump()


def test_option_must_sit_one_level_under_its_decision(make_lines):
    structure = lines_to_structure(make_lines([
        "# A",
        "? Where to?",
        "  * north",
        "      * BIKE",
    ]))
    decision = structure.scene("A").lines[0]
    assert [o.texts for o in decision.options] == [["north"]]
    assert decision.options[0].lines == [JumpLine(id="L3", target="BIKE")]


def test_option_without_decision_is_a_jump(make_lines):
    structure = lines_to_structure(make_lines(["# A", "* BIKE"]))
    assert structure.scene("A").lines == [JumpLine(id="L1", target="BIKE")]


def test_dedented_line_closes_decision(make_lines):
    structure = lines_to_structure(make_lines([
        "# A",
        "? Pick one",
        "  * one",
        "    - first",
        "  * two",
        "  * three",
        "    - third",
        "- after the decision",
    ]))
    lines = structure.scene("A").lines
    assert len(lines) == 2
    assert [o.id for o in lines[0].options] == ["L2", "L4", "L5"]
    assert lines[0].options[2].lines == [NarrativeLine(id="L6", text="third")]
    assert lines[1] == NarrativeLine(id="L7", text="after the decision")


def test_scene_header_flushes_open_decision(make_lines):
    structure = lines_to_structure(make_lines([
        "# A",
        "? Pick",
        "  * yes",
        "    - inside",
        "# B",
        "- in b",
    ]))
    assert structure.scene("A").lines[0].options[0].lines == [NarrativeLine(id="L3", text="inside")]
    assert structure.scene("B").lines == [NarrativeLine(id="L5", text="in b")]


def test_decision_without_options_does_not_swallow_lines(make_lines):
    structure = lines_to_structure(make_lines(["# A", "? Anyone there?", "    - silence"]))
    assert structure.scene("A").lines == [
        DecisionLine(id="L1", prompt="Anyone there?", options=[]),
        NarrativeLine(id="L2", text="silence"),
    ]


def test_new_decision_flushes_previous_one(make_lines):
    structure = lines_to_structure(make_lines([
        "# A",
        "? First",
        "  * a",
        "? Second",
        "  * b",
    ]))
    lines = structure.scene("A").lines
    assert [line.prompt for line in lines] == ["First", "Second"]
    assert lines[1].options[0].texts == ["b"]


def test_nested_decisions(make_lines):
    structure = lines_to_structure(make_lines([
        "# A",
        "? Outer",
        "  * left",
        "    ? Inner",
        "      * deeper",
        "        ? Innermost",
        "          * bottom",
        "            - at the bottom",
        "    - back in left",
        "  * right",
        "- out",
    ]))
    outer, out = structure.scene("A").lines
    left, right = outer.options
    inner, back = left.lines
    assert inner.prompt == "Inner"
    assert back.text == "back in left"
    innermost = inner.options[0].lines[0]
    assert innermost.options[0].lines == [NarrativeLine(id="L7", text="at the bottom")]
    assert right.texts == ["right"]
    assert out.text == "out"


def test_nested_round_trip():
    structure = GameStructure(
        start_scene="A",
        scenes=[
            Scene(
                label="A",
                lines=[
                    DecisionLine(
                        id="d1",
                        prompt="Outer",
                        options=[
                            Option(
                                id="o1",
                                texts=["left", "west"],
                                lines=[
                                    DecisionLine(
                                        id="d2",
                                        prompt="Inner",
                                        options=[
                                            Option(id="o2", texts=["up"], lines=[JumpLine(id="j1", target="END")]),
                                            Option(id="o3", texts=["down"]),
                                        ],
                                    ),
                                    NarrativeLine(id="n1", text="after inner"),
                                ],
                            ),
                        ],
                    ),
                    NarrativeLine(id="n2", text="after outer"),
                ],
            )
        ],
    )
    assert lines_to_structure(structure_to_lines(structure)).model_dump() == structure.model_dump()


def test_option_variants_are_split(make_lines):
    structure = lines_to_structure(make_lines(["# A", "? Go?", "  * Ride a bike, cycle, pedal"]))
    assert structure.scene("A").lines[0].options[0].texts == ["Ride a bike", "cycle", "pedal"]


def test_find_dangling_jumps(make_lines):
    structure = lines_to_structure(make_lines([
        "# A",
        "↗ B",
        "↗ END",
        "? Where?",
        "  * nowhere",
        "    ↗ NOWHERE",
        "# B",
        "↗ MISSING",
    ]))
    assert [j.target for j in find_dangling_jumps(structure)] == ["NOWHERE", "MISSING"]
