import logging
from typing import List, Optional

from bonsai.schemas.story import FlatLine, GameStructure, LineType, Option
from bonsai.services.errors import DocumentError
from bonsai.services.notation import (
    SCENE_MARKER,
    OPTION_MARKER,
    detect_prefix,
    generate_id,
    lines_to_structure,
    option_to_flat_lines,
    scene_line_id,
)
from bonsai.services.options import ensure_option_has_variant, format_option_texts, parse_option_texts


class StoryDocument:
    """
    The editable flat-line document and the single owner of its mutations.

    The story graph is never stored; every call to `structure()` parses the
    current lines again, so the graph cannot drift from the document.
    """

    def __init__(self, lines: Optional[List[FlatLine]] = None):
        self.lines: List[FlatLine] = [line.model_copy() for line in (lines or [])]
        self.revision = 0

    def structure(self) -> GameStructure:
        return lines_to_structure(self.lines)

    def scene_labels(self) -> List[str]:
        return [
            content.strip()
            for line_type, content in (detect_prefix(line.text) for line in self.lines)
            if line_type == LineType.SCENE
        ]

    def _changed(self):
        self.revision += 1

    def _index_of(self, line_id: str) -> int:
        return next((i for i, line in enumerate(self.lines) if line.id == line_id), -1)

    def _scene_header_index(self, scene_label: str) -> int:
        for i, line in enumerate(self.lines):
            line_type, content = detect_prefix(line.text)
            if line_type == LineType.SCENE and content.strip() == scene_label:
                return i
        return -1

    # --- Editing ---

    def update_line(self, line_id: str, text: str):
        index = self._index_of(line_id)
        if index == -1:
            raise DocumentError(f"Line '{line_id}' not found")
        self.lines[index] = self.lines[index].model_copy(update={"text": text})
        self._changed()

    def update_line_indent(self, line_id: str, indent: int):
        index = self._index_of(line_id)
        if index == -1:
            raise DocumentError(f"Line '{line_id}' not found")
        self.lines[index] = self.lines[index].model_copy(update={"indent": max(0, indent)})
        self._changed()

    def insert_line_after(self, after_id: Optional[str], text: str, indent: int) -> str:
        """
        Inserts a line after `after_id`, or at the end when no anchor is given.
        """
        new_line = FlatLine(id=generate_id(), text=text, indent=max(0, indent))
        if after_id is None:
            self.lines.append(new_line)
        else:
            index = self._index_of(after_id)
            if index == -1:
                raise DocumentError(f"Line '{after_id}' not found")
            self.lines.insert(index + 1, new_line)
        self._changed()
        return new_line.id

    def insert_line_before(self, before_id: str, text: str, indent: int) -> str:
        new_line = FlatLine(id=generate_id(), text=text, indent=max(0, indent))
        index = self._index_of(before_id)
        if index == -1:
            raise DocumentError(f"Line '{before_id}' not found")
        self.lines.insert(index, new_line)
        self._changed()
        return new_line.id

    def delete_line(self, line_id: str):
        index = self._index_of(line_id)
        if index == -1:
            raise DocumentError(f"Line '{line_id}' not found")
        # The document always keeps at least one line
        if len(self.lines) <= 1:
            return
        del self.lines[index]
        self._changed()

    def replace_all_lines(self, lines: List[FlatLine]):
        self.lines = [line.model_copy() for line in lines]
        self._changed()

    # --- Engine callbacks ---

    def append_option_variant(self, option_id: str, variant: str):
        """
        Caches a confirmed variant onto an option line, skipping duplicates.
        """
        index = self._index_of(option_id)
        if index == -1:
            return
        line = self.lines[index]
        line_type, content = detect_prefix(line.text)
        if line_type != LineType.OPTION:
            return
        option = Option(id=option_id, texts=parse_option_texts(content))
        known = len(option.texts)
        if len(ensure_option_has_variant(option, variant).texts) == known:
            return
        self.lines[index] = line.model_copy(
            update={"text": f"{OPTION_MARKER}{format_option_texts(option.texts)}"}
        )
        self._changed()

    def append_line_to_scene(self, scene_label: str, text: str, indent: int) -> Optional[str]:
        """
        Appends a line at the very end of a scene, after any trailing decision's
        options, so that its indent nests against the latest context.
        """
        scene_index = self._scene_header_index(scene_label)
        if scene_index == -1:
            logging.warning(f"Cannot append to unknown scene '{scene_label}'")
            return None

        insert_index = next(
            (
                i for i in range(scene_index + 1, len(self.lines))
                if detect_prefix(self.lines[i].text)[0] == LineType.SCENE
            ),
            len(self.lines),
        )
        new_line = FlatLine(id=generate_id(), text=text, indent=max(0, indent))
        self.lines.insert(insert_index, new_line)
        self._changed()
        return new_line.id

    def add_scene(self, scene_label: str) -> str:
        """
        Adds an empty scene header at the end of the document unless the scene exists.
        """
        if scene_label in self.scene_labels():
            return scene_line_id(scene_label)
        header = FlatLine(id=scene_line_id(scene_label), text=f"{SCENE_MARKER}{scene_label}", indent=0)
        self.lines.append(header)
        self._changed()
        return header.id

    def apply_generated_branch(self, decision_id: str, option: Option, new_scene_label: Optional[str] = None):
        """
        Splices a generated option under its decision, after the decision's
        existing subtree, and optionally opens the scene it leads to.
        """
        decision_index = self._index_of(decision_id)
        if decision_index == -1:
            raise DocumentError(f"Decision '{decision_id}' not found")

        decision_indent = self.lines[decision_index].indent
        insert_index = decision_index + 1
        while (
            insert_index < len(self.lines)
            and self.lines[insert_index].indent > decision_indent
            and detect_prefix(self.lines[insert_index].text)[0] != LineType.SCENE
        ):
            insert_index += 1

        self.lines[insert_index:insert_index] = option_to_flat_lines(option, decision_indent + 1)
        self._changed()

        if new_scene_label:
            self.add_scene(new_scene_label)
