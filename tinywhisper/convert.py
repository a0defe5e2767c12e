"""Command that turns a dumped parameter directory into a saved model and config."""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np

from .load import load_whisper
from .model import Whisper


def save_whisper(whisper: Whisper, name) -> Path:
    """Save every parameter of ``whisper`` to ``<name>.npz`` and return that path."""
    target = Path(f"{name}.npz")
    np.savez_compressed(target, **whisper.state_dict())
    return target


def main(argv=None) -> int:
    """Convert the dump folder named by the first argument."""
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        print("Model dump folder not provided", file=sys.stderr)
        return 1
    model_name = args[0]

    try:
        whisper, whisper_config = load_whisper(model_name)
    except (OSError, ValueError) as exc:
        print(f"Error loading model {model_name}: {exc}", file=sys.stderr)
        return 1

    print("Saving model...")
    try:
        save_whisper(whisper, model_name)
    except OSError as exc:
        print(f"Error saving model {model_name}: {exc}", file=sys.stderr)
        return 1

    print("Saving config...")
    try:
        whisper_config.save(f"{model_name}.cfg")
    except OSError as exc:
        print(f"Error saving config for {model_name}: {exc}", file=sys.stderr)
        return 1

    print("Finished.")
    return 0


if __name__ == "__main__":
    sys.exit(main())