from .model_registry import ModelRegistry

__all__ = ["ModelRegistry"]
