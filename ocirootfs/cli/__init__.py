"""ocirootfs CLI — Typer-based command-line interface.

Provides the ``ocirootfs`` command with ``build`` (reference to ext4 image)
and ``inspect`` (resolve and list layers) subcommands.

All terminal output uses Rich.
"""
