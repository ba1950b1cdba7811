"""
Learning path pipeline stages.

Stages (each exposes ``STAGE`` and ``async def run(deps, inp)``):
- concept_graph: build the path concept graph from a material set
- concept_graph_patch: extend an existing graph with missed concepts
- realize_activities: generate grounded activities for path node slots
- psu_promotion: promote recurring structural units to compound concepts

Shared machinery lives beside them: retrieval, coverage, artifact_cache,
saga, adaptive, prompts and the pure helpers in primitives.
"""
