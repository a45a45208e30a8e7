from .assembler import Assembler, AssembledFile
from .thumbnail import DerivativeGenerator, thumbnail_path_for

__all__ = [
    'Assembler',
    'AssembledFile',
    'DerivativeGenerator',
    'thumbnail_path_for'
]
