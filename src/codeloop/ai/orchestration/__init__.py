"""Agent loop orchestration.

The submodules are imported directly (``codeloop.ai.orchestration.agent``,
``.checkpoints``, ``.stream`` ...); the data model in :mod:`codeloop.ai.messages`
depends on :mod:`.errors`, so this package does not import its siblings eagerly.
"""
