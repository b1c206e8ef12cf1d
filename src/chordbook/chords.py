"""Chord vocabulary shared by the chart editor and the data model."""

CHORD_ROOTS = (
    "C", "C#", "Db", "D", "D#", "Eb", "E", "F",
    "F#", "Gb", "G", "G#", "Ab", "A", "A#", "Bb", "B",
)

CHORD_QUALITIES = ("maj", "min", "dim", "aug", "sus2", "sus4")

CHORD_INTERVALS = ("none", "7", "maj7", "6", "9", "11", "13", "add9", "add11")

# Song keys use the same spellings as chord roots.
KEY_OPTIONS = CHORD_ROOTS
