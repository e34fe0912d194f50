"""
Tools Package

Concrete tools the agent can call. Each module exposes ``register(registry, ...)``
which adds its tools to a ToolRegistry under a capability tag:

- filesystem_tool: read_file, write_file, edit_file, list_dir   (filesystem)
- shell_tool:      exec, guarded by deny/allow patterns          (shell)
- web_tool:        web_search (Brave), web_fetch                 (network)
- memory_tool:     memory read/write/append_daily/list           (memory)
- message_tool:    message, proactive outbound messages          (messaging)
- spawn_tool:      spawn, bounded subagent delegation            (spawn)
- cron_tool:       schedule_task, list_tasks, remove_task        (scheduling)

The registry itself lives in tools.registry; nanobot_cli.runtime wires all
of them together.
"""
