import pytest

from pipelinekit.compiler import compile_stages
from pipelinekit.config_namespace import ConfigNamespace
from pipelinekit.engine.pipeline import ActionStep, Block
from pipelinekit.stage_registry import StageRegistry
from pipelinekit.stage_types import StageIO, StageRef
from shipyard.framework.config import BuildConfig
from shipyard.framework.inputs import BuildInputs
from shipyard.stages.registry import default_stage_sequence, get_stage_registry


def _inputs(tmp_path) -> BuildInputs:
    cfg, _ = BuildConfig.from_dict({"build": {"source_dir": str(tmp_path)}})
    return BuildInputs(cfg=cfg, build_id="b1")


def test_default_sequence_runs_the_five_build_stages_in_order():
    assert [node.instance_id for node in default_stage_sequence()] == [
        "resolve",
        "assemble",
        "compile",
        "prune",
        "image",
    ]
    assert get_stage_registry().available() == (
        "build.assemble",
        "build.compile",
        "build.image",
        "build.prune",
        "build.resolve",
    )


def test_registry_resolves_short_names_and_suggests_typos():
    registry = get_stage_registry()

    assert registry.resolve("prune").id == "build.prune"
    with pytest.raises(ValueError, match=r"did you mean: build.prune"):
        registry.resolve("prnue")


def test_registry_rejects_duplicate_ids():
    def _noop(inputs, *, instance_id, cfg):
        return Block(name=instance_id)

    ref = StageRef(id="x.one", builder=_noop)
    with pytest.raises(ValueError, match=r"Duplicate stage kind id: x.one"):
        StageRegistry.from_refs([ref, ref])


def test_compile_records_stage_io_and_effective_config(tmp_path):
    compiled = compile_stages(
        default_stage_sequence(),
        stage_configs={"compile": {"per_workspace": True}},
        inputs=_inputs(tmp_path),
    )

    assert compiled.stage_ids() == ("resolve", "assemble", "compile", "prune", "image")
    assert compiled.metadata["stage_io"]["resolve"]["captures"] == [
        "dependency_store_plan",
        "manifests",
        "resolved_dependencies",
    ]
    assert compiled.metadata["stage_io"]["image"]["provides"] == ["runtime_image"]
    assert compiled.metadata["stage_configs_effective"]["compile"] == {
        "per_workspace": True,
        "verify_store_unchanged": True,
    }
    assert compiled.blocks[2].meta["stage_kind"] == "build.compile"


def test_unknown_stage_option_fails_compilation(tmp_path):
    with pytest.raises(ValueError, match=r"stage=prune kind=build.prune: Unknown config keys under stages.prune: keep_dev"):
        compile_stages(
            default_stage_sequence(),
            stage_configs={"prune": {"keep_dev": True}},
            inputs=_inputs(tmp_path),
        )


def test_config_for_absent_stage_fails_compilation(tmp_path):
    with pytest.raises(ValueError, match=r"unknown stage\(s\): sign"):
        compile_stages(default_stage_sequence(), stage_configs={"sign": {}}, inputs=_inputs(tmp_path))


def test_stage_requiring_a_later_output_fails_compilation(tmp_path):
    stages = default_stage_sequence()
    reordered = [stages[0], stages[1], stages[3], stages[4], stages[2]]

    with pytest.raises(ValueError, match=r"stage=image kind=build.image missing_required_outputs=compiled_workspaces"):
        compile_stages(reordered, stage_configs={}, inputs=_inputs(tmp_path))


def test_capture_key_may_only_have_one_writer(tmp_path):
    def _writer(inputs, *, instance_id, cfg):
        return Block(name=instance_id, nodes=[ActionStep(name="w", fn=lambda _c: 1, capture_key="shared")])

    ref = StageRef(id="x.writer", builder=_writer, io=StageIO(provides=("shared",)))

    with pytest.raises(ValueError, match=r"Capture key collision: shared \(stages: a, b\)"):
        compile_stages([ref.instance("a"), ref.instance("b")], stage_configs={}, inputs=None)


def test_config_namespace_is_strict():
    ns = ConfigNamespace({"use_cache": "yes", "mtime": -1, "nested": {"a": 1}}, path="stages.image")

    with pytest.raises(TypeError, match=r"stages.image.use_cache must be a boolean"):
        ns.get_bool("use_cache")
    with pytest.raises(ValueError, match=r"stages.image.mtime must be >= 0"):
        ns.get_int("mtime", min_value=0)
    child = ns.namespace("nested")
    with pytest.raises(ValueError, match=r"Unknown config keys under stages.image.nested: a"):
        ns.assert_consumed()
    assert child.get_int("a") == 1
    ns.assert_consumed()
    assert ns.get_str("missing", default="x", choices=["x", "y"]) == "x"
    with pytest.raises(ValueError, match=r"Missing required config key: stages.image.other"):
        ns.get_bool("other")
