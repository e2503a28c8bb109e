"""AST -> Tensor IR.

A single forward pass over the AST. Result types are inferred eagerly where
every operand is already known (constants, explicitly shaped parameters) and
left unranked elsewhere; the shape inference pass resolves the rest per call
site.
"""

from __future__ import annotations

import logging

import numpy as np

from tensorc.ast import (
    BinaryExpr,
    CallExpr,
    Expr,
    FunctionAST,
    LiteralExpr,
    Location,
    ModuleAST,
    NumberExpr,
    PrintExpr,
    Prototype,
    ReturnExpr,
    StructAST,
    StructLiteralExpr,
    VarDeclExpr,
    VariableExpr,
    VarType,
)
from tensorc.errors import (
    IRValidationError,
    ShapeMismatchError,
    TypeMismatchError,
    UndefinedSymbolError,
)
from tensorc.ir import UNRANKED, Function, Module, ReturnOp, StructType, TensorType, Type, Value, f64
from tensorc.ir.ops import Payload, check_shape

logger = logging.getLogger(__name__)

BUILTINS = ("transpose", "print")


class IRGen:
    """Builds a Tensor IR `Module` from a `ModuleAST`."""

    def __init__(self, name: str = "module") -> None:
        self.module = Module(name=name)
        self._struct_asts: dict[str, StructAST] = {}
        self._protos: dict[str, Prototype] = {}
        self._fn: Function | None = None
        self._scope: dict[str, Value] = {}

    def generate(self, tree: ModuleAST) -> Module:
        for s in tree.structs:
            if s.name in self._struct_asts:
                raise TypeMismatchError(f"struct '{s.name}' is declared twice", s.loc)
            self._struct_asts[s.name] = s
        for s in tree.structs:
            self._resolve_struct(s.name, (), s.loc)

        for f in tree.functions:
            if f.proto.name in self._protos:
                raise IRValidationError(f"function '{f.proto.name}' is defined twice", f.proto.loc)
            if f.proto.name in BUILTINS:
                raise IRValidationError(f"'{f.proto.name}' is a builtin", f.proto.loc)
            self._protos[f.proto.name] = f.proto

        for f in tree.functions:
            self.module.add_function(self._function(f))

        self.module.verify()
        logger.debug(
            f"irgen: {len(self.module.structs)} structs, {len(self.module.functions)} functions"
        )
        return self.module

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def _resolve_struct(self, name: str, path: tuple[str, ...], loc: Location | None) -> StructType:
        if name in self.module.structs:
            return self.module.structs[name]
        if name in path:
            cycle = " -> ".join(path + (name,))
            raise TypeMismatchError(f"recursive struct definition: {cycle}", loc)
        decl = self._struct_asts.get(name)
        if decl is None:
            raise UndefinedSymbolError("struct", name, loc)

        fields: list[tuple[str, Type]] = []
        for f in decl.fields:
            if any(n == f.name for n, _ in fields):
                raise TypeMismatchError(f"duplicate field '{f.name}' in struct '{name}'", f.loc)
            if f.type.struct_name is not None:
                fields.append((f.name, self._resolve_struct(f.type.struct_name, path + (name,), f.loc)))
            elif f.type.shape is not None:
                fields.append((f.name, TensorType(f64, check_shape(f.type.shape, f.loc))))
            else:
                fields.append((f.name, UNRANKED))
        struct = StructType(name, tuple(fields))
        self.module.add_struct(struct)
        return struct

    def _declared_type(self, var_type: VarType, loc: Location | None) -> Type:
        if var_type.struct_name is not None:
            struct = self.module.structs.get(var_type.struct_name)
            if struct is None:
                raise UndefinedSymbolError("struct", var_type.struct_name, loc)
            return struct
        if var_type.shape is not None:
            return TensorType(f64, check_shape(var_type.shape, loc))
        return UNRANKED

    # ------------------------------------------------------------------
    # Functions and statements
    # ------------------------------------------------------------------

    def _function(self, f: FunctionAST) -> Function:
        fn = Function(name=f.proto.name, loc=f.proto.loc)
        self._fn = fn
        self._scope = {}
        for p in f.proto.params:
            self._scope[p.name] = fn.add_param(p.name, self._declared_type(p.type, p.loc))

        for stmt in f.body:
            if fn.ops and isinstance(fn.ops[-1], ReturnOp):
                raise IRValidationError(f"unreachable code after return in '{fn.name}'", stmt.loc)
            self._statement(stmt)

        if not fn.ops or not isinstance(fn.ops[-1], ReturnOp):
            fn.ret()
        return fn

    def _statement(self, stmt: Expr) -> None:
        fn = self._fn
        if isinstance(stmt, VarDeclExpr):
            self._var_decl(stmt)
        elif isinstance(stmt, ReturnExpr):
            value = self._expr(stmt.value) if stmt.value is not None else None
            fn.ret(value, loc=stmt.loc)
        elif isinstance(stmt, PrintExpr):
            fn.print(self._expr(stmt.arg), loc=stmt.loc)
        elif isinstance(stmt, CallExpr) and stmt.callee == "print":
            self._print_call(stmt)
        else:
            self._expr(stmt)

    def _var_decl(self, decl: VarDeclExpr) -> None:
        if decl.name in self._scope:
            raise IRValidationError(f"redeclaration of '{decl.name}'", decl.loc)
        if decl.init is None:
            raise IRValidationError(f"variable '{decl.name}' has no initializer", decl.loc)

        if decl.type.struct_name is not None:
            declared = self._declared_type(decl.type, decl.loc)
            value = self._expr(decl.init, struct=declared)
            # Call results and parameters are checked against the declared
            # struct once their types are known.
            if not (isinstance(value.type, StructType) and value.type.name == declared.name):
                value = self._fn.cast(value, declared, loc=decl.loc)
        else:
            value = self._expr(decl.init)
            if decl.type.shape is not None:
                shape = check_shape(decl.type.shape, decl.loc)
                value = self._fn.reshape(value, shape, loc=decl.loc)
        self._scope[decl.name] = value

    def _print_call(self, call: CallExpr) -> None:
        if len(call.args) != 1:
            raise TypeMismatchError(f"print expects 1 argument, got {len(call.args)}", call.loc)
        self._fn.print(self._expr(call.args[0]), loc=call.loc)

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def _expr(self, expr: Expr, *, struct: StructType | None = None) -> Value:
        fn = self._fn
        if isinstance(expr, NumberExpr):
            return fn.constant(float(expr.value), loc=expr.loc)
        if isinstance(expr, LiteralExpr):
            return fn.constant(literal_array(expr), loc=expr.loc)
        if isinstance(expr, StructLiteralExpr):
            if struct is None:
                raise TypeMismatchError("struct literal requires a declared struct type", expr.loc)
            return fn.constant(self._struct_payload(expr, struct), struct=struct, loc=expr.loc)
        if isinstance(expr, VariableExpr):
            value = self._scope.get(expr.name)
            if value is None:
                raise UndefinedSymbolError("variable", expr.name, expr.loc)
            return value
        if isinstance(expr, BinaryExpr):
            return self._binary(expr)
        if isinstance(expr, CallExpr):
            return self._call(expr)
        if isinstance(expr, (PrintExpr, ReturnExpr, VarDeclExpr)):
            raise TypeMismatchError(f"{type(expr).__name__} does not produce a value", expr.loc)
        raise IRValidationError(f"unsupported expression {type(expr).__name__}", expr.loc)

    def _struct_payload(self, expr: StructLiteralExpr, struct: StructType) -> Payload:
        if len(expr.values) != len(struct.fields):
            raise TypeMismatchError(
                f"struct '{struct.name}' has {len(struct.fields)} fields, "
                f"literal provides {len(expr.values)}",
                expr.loc,
            )
        payload = []
        for (name, ftype), value in zip(struct.fields, expr.values):
            if isinstance(value, StructLiteralExpr):
                if not isinstance(ftype, StructType):
                    raise TypeMismatchError(f"field '{name}' of '{struct.name}' is not a struct", value.loc)
                payload.append(self._struct_payload(value, ftype))
            elif isinstance(value, LiteralExpr):
                payload.append(literal_array(value))
            elif isinstance(value, NumberExpr):
                payload.append(np.asarray(float(value.value), dtype=np.float64))
            else:
                raise TypeMismatchError("struct literal fields must be literals", value.loc)
        return tuple(payload)

    def _binary(self, expr: BinaryExpr) -> Value:
        fn = self._fn
        lhs = self._expr(expr.lhs)
        if expr.op == ".":
            if not isinstance(expr.rhs, VariableExpr):
                raise TypeMismatchError("field access expects a field name", expr.loc)
            return fn.struct_access(lhs, expr.rhs.name, loc=expr.loc)
        rhs = self._expr(expr.rhs)
        if expr.op == "+":
            return fn.add(lhs, rhs, loc=expr.loc)
        if expr.op == "*":
            return fn.mul(lhs, rhs, loc=expr.loc)
        raise IRValidationError(f"unknown binary operator '{expr.op}'", expr.loc)

    def _call(self, call: CallExpr) -> Value:
        fn = self._fn
        if call.callee == "transpose":
            if len(call.args) != 1:
                raise TypeMismatchError(f"transpose expects 1 argument, got {len(call.args)}", call.loc)
            return fn.transpose(self._expr(call.args[0]), loc=call.loc)
        if call.callee == "print":
            raise TypeMismatchError("print does not produce a value", call.loc)

        proto = self._protos.get(call.callee)
        if proto is None:
            raise UndefinedSymbolError("function", call.callee, call.loc)
        if len(proto.params) != len(call.args):
            raise TypeMismatchError(
                f"'{call.callee}' expects {len(proto.params)} argument(s), got {len(call.args)}",
                call.loc,
            )

        args: list[Value] = []
        for param, arg in zip(proto.params, call.args):
            value = self._expr(arg)
            if param.type.struct_name is None and param.type.shape is not None:
                value = fn.cast(value, self._declared_type(param.type, param.loc), loc=arg.loc)
            args.append(value)
        return fn.call(call.callee, args, loc=call.loc)


def literal_array(expr: LiteralExpr) -> np.ndarray:
    """Dense float64 array of a (possibly nested) literal; ragged literals are rejected."""

    def build(e: Expr) -> object:
        if isinstance(e, NumberExpr):
            return float(e.value)
        if isinstance(e, LiteralExpr):
            items = [build(v) for v in e.values]
            shapes = {np.shape(item) for item in items}
            if len(shapes) > 1:
                raise ShapeMismatchError("ragged array literal", e.loc)
            return items
        raise TypeMismatchError("array literal elements must be numbers", e.loc)

    return np.asarray(build(expr), dtype=np.float64)


def generate(tree: ModuleAST, name: str = "module") -> Module:
    return IRGen(name).generate(tree)
