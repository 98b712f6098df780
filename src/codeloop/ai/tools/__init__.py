"""Builtin agent tools: files, search, commands, diagnostics, web and plans.

Use :func:`codeloop.ai.tools.builtin.register_builtin_tools` to install them
into a :class:`~codeloop.ai.orchestration.tools.ToolRegistry`.
"""
