"""
Health Status Service package for the Health Status layer.

This package decides which health status a user should be shown, given
their encrypted health history and a downloadable rule document. It provides:

- app.main: API surface for status evaluation, rule document hot swap and health.
- app.rules: Interval algebra, status nodes, rule catalog and the resolution engine.
- app.history: History/event/status records, wire dates and the record codec.

Guidelines:
- Evaluation is pure: the same history, rules, identity and date give the same status.
- Rule document gaps resolve to "no status", never to an error.
- Decryption failures only blank the payload of the record concerned.
"""
