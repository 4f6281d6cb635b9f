"""
Model Frontends

Convert model descriptions into the validated ModelGraph used by the compiler.

Frontends:
- description: dict / JSON model descriptions (Topology Extractor)
- torch_fx: float PyTorch models via torch.fx (optional, needs torch)

Usage:
    from npusim.frontends import parse_model_description

    graph = parse_model_description(description)
"""

from .description import (
    INPUT_NAME,
    TopologyExtractor,
    parse_model_description,
    load_model_description,
    description_to_json,
)

__all__ = [
    'INPUT_NAME',
    'TopologyExtractor',
    'parse_model_description',
    'load_model_description',
    'description_to_json',
]
