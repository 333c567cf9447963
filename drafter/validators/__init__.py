from .structure_validator import StructureValidator

__all__ = ["StructureValidator"]
