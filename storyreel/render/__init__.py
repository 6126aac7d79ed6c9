from storyreel.render.asset_resolver import AssetResolver, ResolvedAsset
from storyreel.render.executor import RenderExecutor, RenderOutput
from storyreel.render.pipeline import ExportPipeline, export_movie
from storyreel.render.plan import RenderConfig, RenderPlan
from storyreel.render.plan_builder import build_plan
from storyreel.render.progress import ProgressReporter
from storyreel.render.timeline_validator import ValidatedTimeline, validate

__all__ = [
    "AssetResolver",
    "ExportPipeline",
    "ProgressReporter",
    "RenderConfig",
    "RenderExecutor",
    "RenderOutput",
    "RenderPlan",
    "ResolvedAsset",
    "ValidatedTimeline",
    "build_plan",
    "export_movie",
    "validate",
]
