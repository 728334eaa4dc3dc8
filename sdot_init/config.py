"""Configuration helpers for the initialiser."""

from __future__ import annotations

import copy

from .model import InitialiseOptions

_DEFAULT_OPTIONS = InitialiseOptions()


def get_default_options() -> InitialiseOptions:
    return copy.deepcopy(_DEFAULT_OPTIONS)


def set_default_options(options: InitialiseOptions) -> None:
    global _DEFAULT_OPTIONS
    _DEFAULT_OPTIONS = copy.deepcopy(options)


def reset_default_options() -> None:
    set_default_options(InitialiseOptions())
