import pytest

from bonsai.schemas.story import JumpLine, NarrativeLine, Option
from bonsai.services.document import StoryDocument
from bonsai.services.errors import DocumentError


@pytest.fixture
def document(make_lines):
    return StoryDocument(make_lines([
        "# A",
        "- opening",
        "? Which way?",
        "  * left",
        "    - you go left",
        "  * right",
        "- closing",
        "# B",
        "- in b",
    ]))


def test_structure_is_derived_from_current_lines(document):
    assert document.structure().scene("A").lines[0].text == "opening"
    document.update_line("L1", "- rewritten")
    assert document.structure().scene("A").lines[0].text == "rewritten"


def test_edits_bump_revision(document):
    document.update_line_indent("L6", 2)
    document.insert_line_after("L8", "- more", 0)
    assert document.revision == 2


def test_unknown_line_edits_raise(document):
    with pytest.raises(DocumentError):
        document.update_line("nope", "- x")
    with pytest.raises(DocumentError):
        document.update_line_indent("nope", 1)
    with pytest.raises(DocumentError):
        document.insert_line_after("nope", "- x", 0)
    with pytest.raises(DocumentError):
        document.insert_line_before("nope", "- x", 0)
    with pytest.raises(DocumentError):
        document.delete_line("nope")
    assert document.revision == 0


def test_insert_without_anchor_appends(document):
    new_id = document.insert_line_after(None, "- the end", 0)
    assert document.lines[-1].id == new_id


def test_insert_before_and_after(document):
    before = document.insert_line_before("L1", "- first!", 0)
    after = document.insert_line_after("L8", "- last!", 0)
    ids = [line.id for line in document.lines]
    assert ids.index(before) == ids.index("L1") - 1
    assert ids[-1] == after


def test_indent_never_goes_negative(document):
    document.update_line_indent("L1", -3)
    assert document.lines[1].indent == 0


def test_delete_keeps_at_least_one_line(make_lines):
    document = StoryDocument(make_lines(["# A"]))
    document.delete_line("L0")
    assert [line.id for line in document.lines] == ["L0"]
    assert document.revision == 0


def test_delete_and_replace(document, make_lines):
    document.delete_line("L6")
    assert "L6" not in [line.id for line in document.lines]
    document.replace_all_lines(make_lines(["# Z"]))
    assert document.scene_labels() == ["Z"]


def test_document_does_not_alias_input_lines(make_lines):
    lines = make_lines(["# A", "- a"])
    document = StoryDocument(lines)
    document.update_line("L1", "- b")
    assert lines[1].text == "- a"


def test_append_option_variant(document):
    document.append_option_variant("L3", "west")
    document.append_option_variant("L3", "WEST")
    document.append_option_variant("L3", "  ")
    assert document.lines[3].text == "* left, west"
    assert document.revision == 1


def test_append_option_variant_folds_commas(document):
    document.append_option_variant("L3", "well, right after lunch")
    assert document.lines[3].text == "* left, well right after lunch"
    option = document.structure().scene("A").lines[1].options[0]
    assert option.texts == ["left", "well right after lunch"]


def test_append_option_variant_ignores_non_options(document):
    document.append_option_variant("L1", "west")
    document.append_option_variant("missing", "west")
    assert document.revision == 0


def test_append_line_to_scene_lands_after_trailing_options(make_lines):
    document = StoryDocument(make_lines([
        "# A",
        "? Which way?",
        "  * left",
        "    - you go left",
        "# B",
    ]))
    new_id = document.append_line_to_scene("A", "? What next?", 0)
    assert [line.id for line in document.lines].index(new_id) == 4
    prompts = [line.prompt for line in document.structure().scene("A").lines]
    assert prompts == ["Which way?", "What next?"]


def test_append_line_to_unknown_scene(document):
    assert document.append_line_to_scene("NOPE", "- x", 0) is None
    assert document.revision == 0


def test_add_scene_is_idempotent(document):
    document.add_scene("C")
    document.add_scene("C")
    document.add_scene("A")
    assert document.scene_labels() == ["A", "B", "C"]
    assert document.lines[-1].id == "scene-C"


def test_apply_generated_branch_adds_option_after_existing_ones(document):
    option = Option(id="gen", texts=["fly"], lines=[NarrativeLine(id="gen-n", text="You take off.")])
    document.apply_generated_branch("L2", option)
    decision = document.structure().scene("A").lines[1]
    assert [o.id for o in decision.options] == ["L3", "L5", "gen"]
    assert decision.options[2].lines[0].text == "You take off."
    # The line after the decision still closes it
    assert document.structure().scene("A").lines[2].text == "closing"


def test_apply_generated_branch_opens_new_scene(document):
    option = Option(id="gen", texts=["dig"], lines=[JumpLine(id="gen-j", target="CAVE")])
    document.apply_generated_branch("L2", option, new_scene_label="CAVE")
    structure = document.structure()
    assert structure.scene_labels() == ["A", "B", "CAVE"]
    assert structure.scene("A").lines[1].options[-1].lines == [JumpLine(id="gen-j", target="CAVE")]


def test_apply_generated_branch_unknown_decision(document):
    with pytest.raises(DocumentError):
        document.apply_generated_branch("missing", Option(id="x", texts=["x"]))
