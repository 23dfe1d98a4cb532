# flake8: noqa
"""
Conversation relay: streams model output for a conversation as Server-Sent Events.

Modules:
    errors:   Exception hierarchy mapped to HTTP status codes.
    frames:   Incremental upstream frame decoder and reasoning/content classifier.
    llm:      Streaming client for the inference backend and reasoning effort levels.
    gateway:  Conversation resolution and request validation before streaming.
    session:  Per-request relay state machine bridging upstream and client.
    settings: Configuration loading helpers.
    storage:  Append-only JSONL conversation store.
    main:     FastAPI application wiring everything together.
"""
