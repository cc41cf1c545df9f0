"""Project-specific framework utilities.

This package holds structural helpers that are generic *within* this repo
(config parsing, the build context contract, transcript and build-index
writing) but excludes stage implementations.

Common entrypoints:

- `shipyard.framework.config`: `BuildConfig.from_dict`
- `shipyard.framework.runtime`: `BuildContext`
- `shipyard.framework.artifacts`: transcript writing + build index

For reusable, project-agnostic pipeline primitives, use `pipelinekit`.
"""
