import typer
import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

from bonsai.database import init_db
from bonsai.data.initial_story import initial_lines
from bonsai.schemas.session import EngineStatus
from bonsai.schemas.story import FlatLine, LineType
from bonsai.services.document import StoryDocument
from bonsai.services.engine import StoryEngine, default_collaborators
from bonsai.services.notation import find_dangling_jumps, lines_to_structure

cli_app = typer.Typer()


@cli_app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine and API activity.")):
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _read_lines(path: Path) -> List[FlatLine]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("lines", [])
    return [FlatLine.model_validate(item) for item in data]


@cli_app.command("init-db")
def init_db_command():
    """
    Initializes the database.
    """
    print("Initializing the database...")
    asyncio.run(init_db())
    print("Database initialized.")


@cli_app.command("compile")
def compile_command(file: Path = typer.Argument(..., exists=True, readable=True)):
    """
    Compiles a JSON list of flat lines into a story graph and prints it.
    """
    structure = lines_to_structure(_read_lines(file))
    print(structure.model_dump_json(indent=2))
    for jump in find_dangling_jumps(structure):
        typer.echo(f"warning: jump {jump.id} targets unknown scene '{jump.target}'", err=True)


async def _play(engine: StoryEngine):
    printed = 0
    while True:
        for entry in engine.history[printed:]:
            if entry.type == LineType.DECISION and entry.chosen_option:
                continue
            print(f"[{entry.text}]" if entry.meta else entry.text)
        printed = len(engine.history)

        status = engine.status
        if status == EngineStatus.ENDED:
            return
        if status == EngineStatus.AWAITING_RETRY:
            if typer.confirm("Generation failed. Try again?", default=True):
                await engine.retry()
            else:
                engine.decline_retry()
            continue
        if status == EngineStatus.AWAITING_INPUT:
            decision = engine.current_decision()
            for option in decision.options:
                print(f"  * {option.texts[0]}")
            answer = typer.prompt(">", default="", show_default=False)
            if answer.strip().lower() in ("quit", "exit"):
                return
            await engine.advance(answer)
            continue
        await engine.advance()


@cli_app.command("play")
def play_command(file: Optional[Path] = typer.Argument(None, exists=True, readable=True)):
    """
    Plays a story in the terminal. Without a file the sample story is used.
    """
    lines = _read_lines(file) if file else initial_lines()
    engine = StoryEngine(StoryDocument(lines), **default_collaborators())
    asyncio.run(_play(engine))


if __name__ == "__main__":
    cli_app()
