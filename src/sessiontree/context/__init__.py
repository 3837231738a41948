"""Branch reconstruction and context assembly."""

from sessiontree.context.assembler import AssembledContext, ContextAssembler, ContextMessage
from sessiontree.context.live import BranchWatcher
from sessiontree.context.reconstructor import Branch, BranchReconstructor

__all__ = [
    "AssembledContext",
    "Branch",
    "BranchReconstructor",
    "BranchWatcher",
    "ContextAssembler",
    "ContextMessage",
]
