"""Agent internals -- the inference/tool loop and what it persists.

Module Overview
---------------

**types.py**
    Turn, ToolCall, ChatRequest/ChatResponse, MemoryEntry. Plain dataclasses
    that serialize to dicts for the session log.

**errors.py**
    Exception hierarchy rooted at NanobotError (provider, tool, session,
    spawn).

**provider.py**
    ProviderAdapter over any OpenAI-compatible endpoint, with a per-format
    translation table and transient/terminal error classification.

**session_store.py** / **compaction.py**
    Append-only JSONL session logs with truncation-tolerant replay, and the
    pluggable compaction policies recorded in them.

**memory.py**
    Daily and long-term notes under the workspace.

**prompt_assembler.py** / **model_metadata.py**
    System context turn assembly; context lengths and token estimates.

**tool_executor.py**
    Concurrent dispatch of one assistant turn's tool calls, reassembled in
    call order.

**agent_loop.py**
    The state machine tying the above together.

**subagent.py**
    Bounded delegation to nested loops with a narrowed tool view.

Architecture
------------
Modules never import run_agent.py or the gateway. The loop receives its
provider, registry, stores and hooks through its constructor, so every
collaborator can be swapped for a fake in tests.
"""
