"""Workflow services used by the step dispatcher.

- graph: builds the ordered step list from nodes and edges
- executors: node handlers and the single-node / group executor
- llm: chat-completion client behind ``llm`` nodes
- streaming: SSE framing and stream completion synthesis
- workflow / executions: run state and final result persistence
- background: fire-and-forget task queue for state writes
"""
