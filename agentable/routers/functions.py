"""
Functions Router - lists the column functions computed columns can use.
"""

from fastapi import APIRouter, Query
from typing import List, Optional
from pydantic import BaseModel

from agentable.exceptions import FunctionNotFoundError
from agentable.functions import get_all_functions, get_function, get_functions_by_category

router = APIRouter(prefix="/api/functions", tags=["functions"])


class FunctionInfo(BaseModel):
    name: str
    description: str
    return_type: str
    parameters: List[str]
    category: str
    null_safe: bool
    is_async: bool


def _info(config) -> FunctionInfo:
    return FunctionInfo(
        name=config.name,
        description=config.description,
        return_type=config.return_type.value,
        parameters=list(config.parameters),
        category=config.category,
        null_safe=config.null_safe,
        is_async=config.is_async,
    )


@router.get("", response_model=List[FunctionInfo])
async def list_functions(category: Optional[str] = Query(None)):
    """List registered column functions, optionally by category."""
    functions = get_functions_by_category(category) if category else get_all_functions()
    return [_info(f) for f in sorted(functions, key=lambda f: f.name)]


@router.get("/{name}", response_model=FunctionInfo)
async def get_function_info(name: str):
    config = get_function(name)
    if config is None:
        raise FunctionNotFoundError(name)
    return _info(config)
