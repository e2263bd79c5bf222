"""Coordinator that dispatches detached agent processes for ready tasks.

Why not a job queue library?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The graph file is the queue. Workers, operators and the coordinator all
mutate it under the same exclusive lock, and loop edges reopen finished work,
which no FIFO broker models. What remains is process bookkeeping: claim a
ready task, launch a detached process, track its pid in SQLite and recover
the task when the process dies. A tick loop over those stores is enough for
a single-machine tool.
"""
