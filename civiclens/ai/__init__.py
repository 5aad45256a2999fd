"""
CivicLens
AI module — oracle access for the issue trust pipeline.

Submodules:
    - gateway: Oracle gateway (provider routing, timeout, retry, call logging)
    - prompts: Prompt templates for triage, duplicate comparison, repair verification
    - verdicts: Lenient parsers for oracle replies
    - task_runner: Triage job queue and background worker
"""
