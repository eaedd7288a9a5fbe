"""
Code generation for missing service modules.

Generation is two-phase: the module is written to a staging file next to
the target, validated, and only then moved over the target with
`os.replace`. An invalid artifact never reaches the target path.
"""

import ast
import logging
import os
import re
from pathlib import Path
from string import Template
from typing import Any, Dict, Iterable, List, Union

from workflow_runtime.errors import GenerationFailure
from workflow_runtime.types import utc_timestamp
from workflow_tools.service_template import guess_http_method

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
MODULE_TEMPLATE = TEMPLATES_DIR / "service_module.py.tmpl"

REQUIRED_PARAMETERS = ["args", "context"]

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

FUNCTION_TEMPLATE = Template(
    '''async def ${function}(args, context):
    """${service_name}.${function} (${method})"""
    return await make_request("${service_name}", "${function}", args, context, method="${method}")
'''
)


def _unique(names: Iterable[str]) -> List[str]:
    seen = []
    for name in names:
        if name and name not in seen:
            seen.append(name)
    return seen


def render_module(service_name: str, functions: Iterable[str]) -> str:
    """Fill the service module template for `functions`.

    Raises:
        GenerationFailure: If a service or function name is not a valid identifier
    """
    names = _unique(functions)
    for name in [service_name] + names:
        if not isinstance(name, str) or not _IDENTIFIER.match(name):
            raise GenerationFailure(service_name, f"invalid identifier: {name!r}")
    if not names:
        raise GenerationFailure(service_name, "no functions to generate")

    blocks = [
        FUNCTION_TEMPLATE.substitute(
            function=name, service_name=service_name, method=guess_http_method(name)
        )
        for name in names
    ]
    template = Template(MODULE_TEMPLATE.read_text(encoding="utf-8"))
    return template.substitute(
        service_name=service_name,
        service_upper=service_name.upper(),
        generated_at=utc_timestamp(),
        function_list=", ".join(names),
        function_names=", ".join(f'"{name}"' for name in names),
        functions="\n\n".join(blocks),
    )


def validate_module_source(source: str, required_function: str, capability: str = "") -> List[str]:
    """Check that `source` parses and defines `async def required_function(args, context)`.

    Returns:
        Names of all top-level async functions

    Raises:
        GenerationFailure: If the source is invalid
    """
    capability = capability or required_function
    try:
        tree = ast.parse(source)
    except SyntaxError as e:
        raise GenerationFailure(capability, f"generated module does not parse: {e}") from e

    async_functions = {
        node.name: node for node in tree.body if isinstance(node, ast.AsyncFunctionDef)
    }
    if required_function not in async_functions:
        raise GenerationFailure(
            capability, f"generated module does not define async function {required_function}"
        )

    parameters = [arg.arg for arg in async_functions[required_function].args.args]
    if parameters[: len(REQUIRED_PARAMETERS)] != REQUIRED_PARAMETERS:
        raise GenerationFailure(
            capability,
            f"{required_function} must take (args, context), found ({', '.join(parameters)})",
        )
    return sorted(async_functions)


def write_module(path: Union[str, Path], source: str, required_function: str) -> Dict[str, Any]:
    """Stage, validate and atomically publish a generated module.

    Raises:
        GenerationFailure: If validation fails; the target is left untouched
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    staging = target.with_name(f".{target.name}.staging")

    staging.write_text(source, encoding="utf-8")
    try:
        functions = validate_module_source(
            staging.read_text(encoding="utf-8"), required_function, f"{target.stem}.{required_function}"
        )
    except GenerationFailure:
        staging.unlink()
        raise

    os.replace(staging, target)
    logger.info(f"Generated module {target} ({', '.join(functions)})")
    return {"path": str(target), "functions": functions, "required_function": required_function}
