from typing import List

from bonsai.schemas.story import (
    DecisionLine,
    FlatLine,
    GameStructure,
    JumpLine,
    NarrativeLine,
    Option,
    PromptLine,
    Scene,
)
from bonsai.services.notation import structure_to_lines

INITIAL_TITLE = "By the fire"

initial_story = GameStructure(
    start_scene="FIRE",
    scenes=[
        Scene(
            label="FIRE",
            lines=[
                PromptLine(id="GLOBAL_PROMPT_1", text="Write in a fun, adventurous style with enthusiasm"),
                NarrativeLine(id="WvKIHTx2rS", text="The fire burns brightly."),
                DecisionLine(
                    id="pa9S6u-ZYh",
                    prompt="What do you want to do now?",
                    options=[
                        Option(
                            id="Jt_hsbbMyj",
                            texts=["Ride a bike"],
                            lines=[
                                NarrativeLine(id="PDsx_Z8EZE", text="That's cool!"),
                                JumpLine(id="tvifalP-sU", target="BIKE"),
                            ],
                        ),
                        Option(
                            id="5Mv2xSGDA4",
                            texts=["Learn to sail"],
                            lines=[NarrativeLine(id="LOgR2S3Pl3", text="You're sailing, that's pretty rad")],
                        ),
                    ],
                ),
                NarrativeLine(id="btrpfymWIh", text="Okay kid!"),
            ],
        ),
        Scene(
            label="BIKE",
            lines=[
                NarrativeLine(id="0wGl_kKyzp", text="You're biking, that's pretty rad"),
                JumpLine(id="obhQiQK90-", target="FIRE"),
            ],
        ),
    ],
)


def initial_lines() -> List[FlatLine]:
    return structure_to_lines(initial_story)
