"""Stage retry engine and parallel DAG task scheduling.

Two engines share this package. The stage engine drives one pipeline stage
through invoke, validate and retry, injecting validation errors into the next
prompt. The scheduler levels an implementation task graph into waves, runs each
wave on a bounded thread pool, skips dependents of failed tasks and checkpoints
progress so an interrupted run can resume.
"""
