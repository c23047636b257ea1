from typing import List

import pytest

from bonsai.schemas.branching import BranchRequest, MatchResult
from bonsai.schemas.story import (
    DecisionLine,
    FlatLine,
    GameStructure,
    JumpLine,
    NarrativeLine,
    Option,
    Scene,
)


def _rows_to_lines(rows: List[str]) -> List[FlatLine]:
    """
    Two leading spaces per indent level, ids L0, L1, ... in order.
    """
    lines = []
    for i, row in enumerate(rows):
        indent = (len(row) - len(row.lstrip(" "))) // 2
        lines.append(FlatLine(id=f"L{i}", text=row.strip(), indent=indent))
    return lines


@pytest.fixture
def make_lines():
    return _rows_to_lines


@pytest.fixture
def fire_game() -> GameStructure:
    return GameStructure(
        start_scene="FIRE",
        scenes=[
            Scene(
                label="FIRE",
                lines=[
                    NarrativeLine(id="n-fire", text="The fire burns brightly."),
                    DecisionLine(
                        id="d-what",
                        prompt="What do you do?",
                        options=[
                            Option(
                                id="o-bike",
                                texts=["Ride a bike"],
                                lines=[
                                    NarrativeLine(id="n-cool", text="That's cool!"),
                                    JumpLine(id="j-bike", target="BIKE"),
                                ],
                            ),
                            Option(
                                id="o-sail",
                                texts=["Learn to sail"],
                                lines=[NarrativeLine(id="n-sail", text="You're sailing, that's pretty rad")],
                            ),
                        ],
                    ),
                    NarrativeLine(id="n-okay", text="Okay kid!"),
                ],
            ),
            Scene(
                label="BIKE",
                lines=[
                    NarrativeLine(id="n-biking", text="You're biking..."),
                    JumpLine(id="j-fire", target="FIRE"),
                ],
            ),
        ],
    )


class FakeMatcher:
    def __init__(self, result: MatchResult = None, error: Exception = None):
        self.result = result or MatchResult()
        self.error = error
        self.calls = []

    async def __call__(self, player_input, options):
        self.calls.append((player_input, [o.id for o in options]))
        if self.error:
            raise self.error
        return self.result


class FakeGenerator:
    """
    Replays queued results; queued exceptions are raised instead.
    """

    def __init__(self, *results):
        self.results = list(results)
        self.requests: List[BranchRequest] = []

    async def __call__(self, request: BranchRequest):
        self.requests.append(request)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def fake_matcher():
    return FakeMatcher


@pytest.fixture
def fake_generator():
    return FakeGenerator


class FakeCompletions:
    def __init__(self, content: str = "", error: Exception = None):
        self.content = content
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        message = type("Message", (), {"content": self.content})()
        choice = type("Choice", (), {"message": message})()
        return type("Completion", (), {"choices": [choice]})()


class FakeClient:
    """
    Stands in for openai.AsyncOpenAI: exposes chat.completions.create.
    """

    def __init__(self, content: str = "", error: Exception = None):
        self.completions = FakeCompletions(content, error)
        self.chat = type("Chat", (), {"completions": self.completions})()


@pytest.fixture
def fake_client():
    return FakeClient
