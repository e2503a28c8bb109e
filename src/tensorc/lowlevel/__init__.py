"""Low-level IR: flat scalar code over explicit addresses."""

from tensorc.lowlevel.ir import (
    RT_ALLOC,
    RT_FREE,
    RT_PRINT,
    BinOp,
    Block,
    Br,
    Call,
    CondBr,
    Const,
    ICmp,
    Imm,
    Load,
    LowLevelFunction,
    LowLevelModule,
    Phi,
    PtrAdd,
    Reg,
    Ret,
    Store,
)
from tensorc.lowlevel.parser import parse_lowlevel

__all__ = [
    "RT_ALLOC",
    "RT_FREE",
    "RT_PRINT",
    "BinOp",
    "Block",
    "Br",
    "Call",
    "CondBr",
    "Const",
    "ICmp",
    "Imm",
    "Load",
    "LowLevelFunction",
    "LowLevelModule",
    "Phi",
    "PtrAdd",
    "Reg",
    "Ret",
    "Store",
    "parse_lowlevel",
]
