"""Affine IR: loop nests over scalar buffer elements."""

from tensorc.affine.ir import (
    AffineFunction,
    AffineModule,
    AffineOp,
    AllocOp,
    BinaryOp,
    Buffer,
    CallOp,
    ConstantOp,
    ForOp,
    IfOp,
    IndexVar,
    LinearExpr,
    LoadOp,
    MemRefType,
    PrintOp,
    ReturnOp,
    Scalar,
    StoreOp,
)
from tensorc.affine.parser import parse_affine

__all__ = [
    "AffineFunction",
    "AffineModule",
    "AffineOp",
    "AllocOp",
    "BinaryOp",
    "Buffer",
    "CallOp",
    "ConstantOp",
    "ForOp",
    "IfOp",
    "IndexVar",
    "LinearExpr",
    "LoadOp",
    "MemRefType",
    "PrintOp",
    "ReturnOp",
    "Scalar",
    "StoreOp",
    "parse_affine",
]
