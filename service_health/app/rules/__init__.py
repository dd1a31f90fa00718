"""
Rules engine package.

Defines the rule document model and the status resolution engine used by
the Health Status Service. Rule documents are parsed once into closed
types: intervals, status nodes and the per-kind rule catalogs.

Modules of interest:
- intervals: Literal, range and named-constant intervals.
- statuses: Leaf, reference and conditional statuses; override policy.
- models: Rule catalogs and the RuleSet document.
- engine: Condition evaluation and history replay.
"""
