"""`pipelinekit` invariants and boundaries.

1) `pipelinekit` must not import `shipyard.*`.
2) `pipelinekit` provides engine primitives (command/action/block execution +
   recording) and a stage authoring kit (StageRef/StageRegistry/ConfigNamespace/
   compile_stages).
3) Nodes run strictly in declaration order; the first exception aborts the run
   and carries `pipeline_path`, `pipeline_node_type` and `pipeline_node_name`.
4) `pipelinekit` does not know what a stage produces. Stages publish results
   through capture keys and declare them in `StageIO`; the compiler only checks
   that every required key is produced earlier in the pipeline.
"""
