"""
Node type registry: source of truth for what each node type is.

Maps editor node type strings to their default port counts and to the role
the engine needs to know about (decision branching, loop constructs,
display-only previews). Handler logic lives elsewhere; this registry only
decides whether a type exists and how its ports behave.
"""

from __future__ import annotations

from pydantic import BaseModel

from contentflow.models.graph import NodeRole


class NodeTypeSpec(BaseModel):
    inputs: int = 1
    outputs: int = 1
    role: NodeRole = "work"
    fixed_outputs: bool = False
    optional_inputs: tuple[int, ...] = ()
    # (config key, skip reason): the node is skipped before dispatch when the key is empty
    requires: tuple[tuple[str, str], ...] = ()
    description: str = ""


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
# Keys match the node `type` values used in the editor.

NODE_REGISTRY: dict[str, NodeTypeSpec] = {
    # ---- Research ----
    "trend-research": NodeTypeSpec(inputs=0, role="source", description="Analyze trends and keywords"),
    "content-research": NodeTypeSpec(inputs=0, role="source", description="Deep web research"),
    "research-revise": NodeTypeSpec(description="Analysis and revision of research"),

    # ---- Content ----
    "script-generator": NodeTypeSpec(description="Generate video scripts"),
    "ai-analysis": NodeTypeSpec(description="Content analysis"),
    "improvement-node": NodeTypeSpec(description="Enhance depth, detail and engagement"),
    "sequential-node": NodeTypeSpec(description="Extract spoken dialogue sequentially"),
    "image-sequential-node": NodeTypeSpec(description="Sequence image prompts with timing"),

    # ---- Audio ----
    "voice-generator": NodeTypeSpec(description="Text-to-speech"),
    "audio-processor": NodeTypeSpec(description="Audio editing and enhancement"),
    "music-generator": NodeTypeSpec(description="Background music"),

    # ---- Video / visual ----
    "character-animator": NodeTypeSpec(description="Character animation"),
    "video-generator": NodeTypeSpec(description="Automated video creation"),
    "visual-effects": NodeTypeSpec(description="Video effects"),
    "image-generator": NodeTypeSpec(description="Image creation"),
    "comfyui-workflow": NodeTypeSpec(description="ComfyUI workflow"),
    "batch-comfyui": NodeTypeSpec(description="Batch ComfyUI generation"),
    "likeness-node": NodeTypeSpec(description="Visual consistency from reference images"),
    "lora-training-node": NodeTypeSpec(description="Train a LoRA on reference images"),
    "lora-node": NodeTypeSpec(
        requires=(("selectedModel", "no_model_selected"),),
        description="Apply a trained LoRA",
    ),
    "video-assembly": NodeTypeSpec(inputs=2, description="Combine audio and images into a video"),

    # ---- Processing ----
    "media-processor": NodeTypeSpec(description="Process and optimize media"),
    "batch-processor": NodeTypeSpec(description="Process multiple files"),
    "quality-enhancer": NodeTypeSpec(description="Upscale and enhance media"),

    # ---- Output ----
    "export-publisher": NodeTypeSpec(description="Export and publish"),
    "cloud-storage": NodeTypeSpec(description="Save to cloud storage"),
    "analytics-tracker": NodeTypeSpec(description="Track analytics"),
    "trash-node": NodeTypeSpec(outputs=0, description="Archive rejected content"),

    # ---- Flow control ----
    "input-node": NodeTypeSpec(inputs=0, role="source", description="Format and route input data"),
    "file-input-node": NodeTypeSpec(
        inputs=0, outputs=2, role="dual_output",
        requires=(("uploadedFile", "no_file_uploaded"),),
        description="Uploaded script with script/prompts outputs",
    ),
    "decision-node": NodeTypeSpec(
        inputs=2, outputs=2, role="decision", fixed_outputs=True, optional_inputs=(0, 1),
        description="Decision with YES/NO outputs",
    ),
    "judgment-node": NodeTypeSpec(
        outputs=2, role="decision", fixed_outputs=True,
        description="Quality assessment with YES/NO outputs",
    ),
    "yes-no-node": NodeTypeSpec(
        outputs=2, role="decision", fixed_outputs=True,
        description="Binary decision with YES/NO outputs",
    ),
    "loop-node": NodeTypeSpec(inputs=2, role="loop", description="Bounded loop construct"),

    # ---- Previews (display only) ----
    "preview-node": NodeTypeSpec(outputs=0, role="preview"),
    "image-preview-node": NodeTypeSpec(outputs=0, role="preview"),
    "audio-preview-node": NodeTypeSpec(outputs=0, role="preview"),
    "video-preview-node": NodeTypeSpec(outputs=0, role="preview"),
    "text-preview-node": NodeTypeSpec(outputs=0, role="preview"),
}

DECISION_OUTPUT_PORTS = 2
YES_PORT = 0
NO_PORT = 1


def get_node_spec(node_type: str) -> NodeTypeSpec | None:
    """Look up a node type spec, returning None if unknown."""
    return NODE_REGISTRY.get(node_type)


def register_node_type(node_type: str, spec: NodeTypeSpec) -> None:
    """Add or replace a node type (used by embedders and tests)."""
    NODE_REGISTRY[node_type] = spec
