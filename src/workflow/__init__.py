"""Task workflow engine with checkpointed, resumable phase execution.

This package drives a single claimed task through a fixed phase sequence:
- Task discovery across GitHub, GitHub Projects, GitLab, local and custom sources
- Ranking with claimed/in-flight exclusion and policy filtering
- A shared task registry guarding against duplicate claims across processes
- A per-instance checkpoint log that is the source of truth for resume
- A state machine invoking external workers phase by phase
- A FastAPI surface for status, discovery, resume and abort
"""
