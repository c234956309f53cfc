"""
Pitch-shift vocabulary.

Clients speak in named pitch shifts (``"fifth_up"``), application code works
with ``Transposition`` members, and both the database and the inference queue
store a signed semitone count. The three spellings are linked by explicit lookup tables so
any one of them can be renamed without touching the others.
"""

from enum import Enum, auto


class Transposition(Enum):
    """Internal transposition options."""

    SAME_OCTAVE = auto()
    LOWER_OCTAVE = auto()
    HIGHER_OCTAVE = auto()
    THIRD_DOWN = auto()
    THIRD_UP = auto()
    FIFTH_DOWN = auto()
    FIFTH_UP = auto()


_PITCH_SHIFT_TO_TRANSPOSITION: dict[str, Transposition] = {
    "same_octave": Transposition.SAME_OCTAVE,
    "lower_octave": Transposition.LOWER_OCTAVE,
    "higher_octave": Transposition.HIGHER_OCTAVE,
    "third_down": Transposition.THIRD_DOWN,
    "third_up": Transposition.THIRD_UP,
    "fifth_down": Transposition.FIFTH_DOWN,
    "fifth_up": Transposition.FIFTH_UP,
}

_TRANSPOSITION_TO_PITCH_SHIFT: dict[Transposition, str] = {
    transposition: name for name, transposition in _PITCH_SHIFT_TO_TRANSPOSITION.items()
}

_TRANSPOSITION_TO_SEMITONES: dict[Transposition, int] = {
    Transposition.SAME_OCTAVE: 0,
    Transposition.LOWER_OCTAVE: -12,
    Transposition.HIGHER_OCTAVE: 12,
    Transposition.THIRD_DOWN: -4,
    Transposition.THIRD_UP: 4,
    Transposition.FIFTH_DOWN: -7,
    Transposition.FIFTH_UP: 7,
}

_SEMITONES_TO_TRANSPOSITION: dict[int, Transposition] = {
    semitones: transposition
    for transposition, semitones in _TRANSPOSITION_TO_SEMITONES.items()
}


def to_transposition(pitch_shift: str) -> Transposition:
    """Parse a client-facing pitch shift (case-insensitive)."""
    if not pitch_shift or not pitch_shift.strip():
        raise ValueError("Pitch shift cannot be empty")

    transposition = _PITCH_SHIFT_TO_TRANSPOSITION.get(pitch_shift.strip().lower())
    if transposition is None:
        valid = ", ".join(valid_pitch_shifts())
        raise ValueError(f"Invalid pitch shift '{pitch_shift}'. Valid values are: {valid}")
    return transposition


def to_pitch_shift(transposition: Transposition) -> str:
    return _TRANSPOSITION_TO_PITCH_SHIFT[transposition]


def to_semitones(transposition: Transposition) -> int:
    return _TRANSPOSITION_TO_SEMITONES[transposition]


def from_semitones(semitones: int) -> Transposition:
    try:
        return _SEMITONES_TO_TRANSPOSITION[semitones]
    except KeyError:
        raise ValueError(f"Unsupported transposition: {semitones} semitones") from None


def valid_pitch_shifts() -> list[str]:
    return list(_PITCH_SHIFT_TO_TRANSPOSITION)
