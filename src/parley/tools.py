import inspect
import re
import types
import typing
from typing import Any, Callable

from pydantic import BaseModel, Field

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    dict: "object",
    list: "array",
    tuple: "array",
    set: "array",
    type(None): "null",
}


def _json_type(annotation) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    if isinstance(annotation, str):
        by_name = {t.__name__: j for t, j in _JSON_TYPES.items()}
        return by_name.get(annotation.split("|")[0].strip(), "string")
    origin = typing.get_origin(annotation)
    if origin in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        return _json_type(args[0]) if args else "null"
    if origin is not None:
        annotation = origin
    return _JSON_TYPES.get(annotation, "string")


def _parse_param_descriptions(doc: str | None) -> dict[str, str]:
    """Pull ``name: description`` lines out of a Google-style ``Args:`` block."""
    if not doc:
        return {}
    descriptions: dict[str, str] = {}
    in_args = False
    current = None
    for raw in inspect.cleandoc(doc).splitlines():
        line = raw.rstrip()
        if line.strip() in ("Args:", "Arguments:"):
            in_args = True
            continue
        if not in_args:
            continue
        if line and not line.startswith(" "):
            break
        match = re.match(r"^\s{2,}(\w+)(?:\s*\([^)]*\))?:\s*(.*)$", line)
        if match and (current is None or len(raw) - len(raw.lstrip()) <= 4):
            current = match.group(1)
            descriptions[current] = match.group(2).strip()
        elif current and line.strip():
            descriptions[current] += " " + line.strip()
    return descriptions


def _summary(doc: str | None) -> str:
    if not doc:
        return ""
    return inspect.cleandoc(doc).split("\n\n")[0].strip()


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    signature = inspect.signature(func)
    descriptions = _parse_param_descriptions(func.__doc__)
    properties = {}
    required = []
    for name, param in signature.parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        prop = {"type": _json_type(param.annotation)}
        if name in descriptions:
            prop["description"] = descriptions[name]
        properties[name] = prop
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {
        "type": "object",
        "properties": properties,
        "required": required,
    }
    return schema, required


class Tool(BaseModel):
    """A callable the model may invoke by name.

    Build one with the :func:`tool` decorator, or directly when the schema
    comes from elsewhere.
    """

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict = Field(default_factory=lambda: {
        "type": "object", "properties": {}, "required": [],
    })
    model_config = {"arbitrary_types_allowed": True}

    def get_schema(self) -> dict:
        """Return an OpenAI-compatible function tool schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    async def __call__(self, **kwargs) -> Any:
        result = self.func(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


def tool(func: Callable | None = None, *, name: str | None = None):
    """Decorator turning a plain or async function into a :class:`Tool`.

    The first docstring paragraph becomes the description and the
    ``Args:`` section supplies parameter descriptions.
    """
    def wrap(f: Callable) -> Tool:
        schema, _ = _build_parameters_schema(f)
        return Tool(
            func=f,
            name=name or f.__name__,
            description=_summary(f.__doc__),
            parameters_schema=schema,
        )

    if func is not None:
        return wrap(func)
    return wrap
