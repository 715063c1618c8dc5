"""Background job orchestration for agentic CLI prompts.

Each prompt becomes a job that owns one agent process. The process output is
a newline-delimited JSON event stream; the pipeline extracts assistant text
from it and keeps bounded chunk histories for polling readers. Everything runs
on one event loop, and the only state shared between tasks is the job
registry, whose operations never suspend between read and write.
"""
