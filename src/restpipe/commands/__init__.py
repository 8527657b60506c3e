"""CLI sub-commands registered on the root Typer app in :mod:`restpipe.app`."""
