"""
Partition filters for scan planning.

Filters are written as dicts over partition field names and evaluated
against each data file's partition values; files that cannot match are
dropped from the plan before any data is read.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .data_structures import DataFile


class FilterOp(Enum):
    """Supported filter operations"""
    EQ = "=="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    IN = "in"
    NOT_IN = "not_in"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


@dataclass
class FilterExpression:
    """A single condition on one partition field"""
    column: str
    op: FilterOp
    value: Any

    def evaluate(self, values: Mapping[str, Any]) -> bool:
        """Test partition values against this condition.

        A null partition value only satisfies IS_NULL; every comparison
        against it is false. Files written under a spec without this field
        cannot be pruned and always match.
        """
        if self.column not in values:
            return True
        actual = values[self.column]
        if self.op == FilterOp.IS_NULL:
            return actual is None
        if self.op == FilterOp.IS_NOT_NULL:
            return actual is not None
        if actual is None:
            return False

        if self.op == FilterOp.IN:
            return actual in self.value
        if self.op == FilterOp.NOT_IN:
            return actual not in self.value
        if self.value is None:
            return False
        try:
            return _COMPARISONS[self.op](actual, self.value)
        except TypeError:
            raise ValueError(
                f"Cannot compare partition field {self.column}={actual!r} with {self.value!r}"
            ) from None


_COMPARISONS: Dict[FilterOp, Callable[[Any, Any], bool]] = {
    FilterOp.EQ: lambda a, b: a == b,
    FilterOp.NE: lambda a, b: a != b,
    FilterOp.LT: lambda a, b: a < b,
    FilterOp.LE: lambda a, b: a <= b,
    FilterOp.GT: lambda a, b: a > b,
    FilterOp.GE: lambda a, b: a >= b,
}


def parse_filter_dict(filter_dict: Dict[str, Any]) -> List[FilterExpression]:
    """
    Parse a filter dict into FilterExpression list.

    Supported formats:
        {"field": value}                    -> field == value
        {"field": ("==", value)}            -> field == value
        {"field": (">", value)}             -> field > value
        {"field": ("in", [v1, v2])}         -> field in [v1, v2]
        {"field": ("between", (lo, hi))}    -> lo <= field <= hi
        {"field": ("is_null", True)}        -> field is null
        {"field": ("is_not_null", True)}    -> field is not null

    Raises:
        ValueError: For an unknown operator
    """
    expressions = []
    for column, condition in filter_dict.items():
        if isinstance(condition, tuple) and len(condition) == 2:
            op_str, value = condition
            op_name = op_str.lower() if isinstance(op_str, str) else op_str

            if op_name == "between":
                lo, hi = value
                expressions.append(FilterExpression(column, FilterOp.GE, lo))
                expressions.append(FilterExpression(column, FilterOp.LE, hi))
            elif op_name in ("is_null", "isnull"):
                expressions.append(FilterExpression(column, FilterOp.IS_NULL, None))
            elif op_name in ("is_not_null", "notnull", "isnotnull"):
                expressions.append(FilterExpression(column, FilterOp.IS_NOT_NULL, None))
            else:
                expressions.append(FilterExpression(column, _parse_op(op_str), value))
        else:
            expressions.append(FilterExpression(column, FilterOp.EQ, condition))
    return expressions


def _parse_op(op_str: str) -> FilterOp:
    mapping = {
        "==": FilterOp.EQ,
        "=": FilterOp.EQ,
        "eq": FilterOp.EQ,
        "!=": FilterOp.NE,
        "<>": FilterOp.NE,
        "ne": FilterOp.NE,
        "<": FilterOp.LT,
        "lt": FilterOp.LT,
        "<=": FilterOp.LE,
        "le": FilterOp.LE,
        ">": FilterOp.GT,
        "gt": FilterOp.GT,
        ">=": FilterOp.GE,
        "ge": FilterOp.GE,
        "in": FilterOp.IN,
        "not_in": FilterOp.NOT_IN,
        "not in": FilterOp.NOT_IN,
        "notin": FilterOp.NOT_IN,
    }
    key = op_str.lower() if isinstance(op_str, str) else op_str
    if key not in mapping:
        raise ValueError(f"Unknown filter operator: {op_str!r}")
    return mapping[key]


PartitionFilter = Union[Dict[str, Any], Callable[[DataFile], bool], None]


def partition_predicate(partition_filter: PartitionFilter) -> Optional[Callable[[DataFile], bool]]:
    """Turn a filter dict or callable into a predicate over data files"""
    if partition_filter is None:
        return None
    if callable(partition_filter):
        return partition_filter

    expressions = parse_filter_dict(partition_filter)

    def predicate(data_file: DataFile) -> bool:
        return all(expr.evaluate(data_file.partition_values) for expr in expressions)

    return predicate
