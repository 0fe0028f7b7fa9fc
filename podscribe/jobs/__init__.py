"""
Job orchestration for Podscribe.

Design intent:
- Run one detached transcription pipeline per submitted job.
- Expose polling and cleanup without ever blocking on pipeline work.
"""
