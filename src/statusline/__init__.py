"""Statusline - context usage and session statistics engine.

This package estimates how much of a model's context window a conversation
transcript consumes and keeps durable cost/line-change totals across many
short-lived statusline invocations.

Main modules:
    - cli: Command-line interface (statusline command)
    - core: Paths, configuration, errors, retry policy, hook state
    - context: Transcript parsing, compaction detection, window resolution
    - stats: SQLite ledger with a JSON mirror
"""

__version__ = "0.1.0"
