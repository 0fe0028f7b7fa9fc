"""
HTTP surface for Podscribe.

Design intent:
- Map job submission, polling and cleanup onto thin FastAPI routes.
- Translate domain errors into status codes; keep no business logic here.
"""
