from .function import Function
from .module import Module
from .ops import (
	AddOp,
	CastOp,
	ConstantOp,
	ElementwiseOp,
	GenericCallOp,
	MulOp,
	Op,
	PrintOp,
	ReshapeOp,
	ReturnOp,
	StructAccessOp,
	TransposeOp,
)
from .types import (
	UNRANKED,
	FunctionSignature,
	ScalarType,
	StructType,
	TensorType,
	Type,
	f64,
	is_ranked,
)
from .value import Value

__all__ = [
	"Function",
	"Module",
	"Value",
	"Op",
	"AddOp",
	"CastOp",
	"ConstantOp",
	"ElementwiseOp",
	"GenericCallOp",
	"MulOp",
	"PrintOp",
	"ReshapeOp",
	"ReturnOp",
	"StructAccessOp",
	"TransposeOp",
	"FunctionSignature",
	"ScalarType",
	"StructType",
	"TensorType",
	"Type",
	"UNRANKED",
	"f64",
	"is_ranked",
]
