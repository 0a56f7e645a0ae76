"""Built-in CLI sub-commands for linctl.

This package groups the Typer sub-command modules that form the CLI's
command tree:

* :mod:`~linctl.commands.auth` -- sign in, sign out, inspect and print
  the OAuth access token.
* :mod:`~linctl.commands.config` -- view and modify the settings file.

Each module exports a :class:`typer.Typer` sub-application that
:mod:`linctl.app` mounts on the root app.
"""
