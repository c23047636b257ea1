from typing import List, Optional

from bonsai.schemas.story import Option


def normalize_text(text: str) -> str:
    return text.strip().lower()


def get_option_primary_text(option: Option) -> str:
    return option.texts[0] if option.texts else ""


def parse_option_texts(raw: str) -> List[str]:
    """
    Splits a comma-delimited option line into its variants.
    """
    return [part.strip() for part in raw.split(",") if part.strip()]


def format_option_texts(texts: List[str]) -> str:
    return ", ".join(texts)


def option_has_text(option: Option, candidate: str) -> bool:
    normalized = normalize_text(candidate)
    return any(normalize_text(text) == normalized for text in option.texts)


def clean_option_variant(text: str) -> str:
    """
    Makes free text safe to store as one variant: commas separate variants
    on an option line, so they are folded into spaces.
    """
    return " ".join(text.replace(",", " ").split())


def ensure_option_has_variant(option: Option, variant: str) -> Option:
    """
    Appends a variant to the option unless an equivalent one is already present.
    """
    variant = clean_option_variant(variant)
    if not variant:
        return option
    if not option_has_text(option, variant):
        option.texts = [*option.texts, variant]
    return option


def find_matching_option(options: List[Option], player_input: str) -> Optional[Option]:
    """
    Finds the option the player meant without any remote help.

    An exact (normalized) match on any variant wins. Otherwise the input must be
    contained in the variants of exactly one option; several candidates is ambiguous.
    """
    normalized = normalize_text(player_input)
    if not normalized:
        return None

    for option in options:
        if any(normalize_text(text) == normalized for text in option.texts):
            return option

    partial = [
        option for option in options
        if any(normalized in normalize_text(text) for text in option.texts)
    ]
    if len(partial) == 1:
        return partial[0]
    return None
