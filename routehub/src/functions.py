from typing import Any, Dict, List

from routehub.src import schemas
from routehub.src.exceptions import APIException


def makeExceptionResponses(exceptions: List[Any]) -> Dict[int, dict]:
    """
    Generate OpenAPI response documentation from a list of API exceptions.

    Exceptions may be given as instances, or as classes whose constructor
    takes no argument (those are instantiated here). Examples sharing a
    status code are merged under the same response entry.

    Args:
        exceptions (List[APIException | Type[APIException]]): Exceptions a route may raise.

    Returns:
        Dict[int, dict]: A dictionary of OpenAPI response specs grouped by status code.

    Example:
        >>> makeExceptionResponses([exceptions.InvalidToken, exceptions.NoPermission])
        {401: {...}, 403: {...}}
    """
    responses = {}

    for exception in exceptions:
        if isinstance(exception, type):
            exception = exception()
        if not isinstance(exception, APIException):
            continue
        statusCode = exception.status_code
        exampleKey = type(exception).__name__
        exampleValue = {
            "summary": str(exception.headers),
            "value": {"detail": exception.detail},
        }

        if statusCode not in responses:
            responses[statusCode] = {
                "model": schemas.ErrorResponse,
                "content": {
                    "application/json": {"examples": {exampleKey: exampleValue}}
                },
            }
        else:
            responses[statusCode]["content"]["application/json"]["examples"][
                exampleKey
            ] = exampleValue

    return responses


def enumStr(enumClass) -> str:
    """
    Convert an Enum class into a comma-separated string of its values.

    Example:
        >>> enumStr(TripStatus)
        'not_started, in_progress, completed, cancelled'
    """
    return ", ".join(str(x.value) for x in enumClass)


def normalizeCode(code: str) -> str:
    """
    Normalize an organization code into a database identifier fragment.

    The code is lowercased and every character outside `[a-z0-9]` is
    replaced with an underscore. The mapping is deterministic, so the same
    code always yields the same fragment.

    Example:
        >>> normalizeCode("Green-Valley.School")
        'green_valley_school'
    """
    return "".join(c if ("a" <= c <= "z" or "0" <= c <= "9") else "_" for c in code.lower())


def isValidTransition(
    transitions: dict[Any, list[Any]], old_state: Any, new_state: Any
) -> bool:
    """
    Check if a state transition is valid.

    Args:
        transitions (dict[Any, list[Any]]): Mapping of valid transitions.
            Example:
                {
                    "not_started": ["in_progress", "cancelled"],
                    "in_progress": ["completed", "cancelled"],
                }
        old_state (Any): Current state value.
        new_state (Any): Desired new state value.

    Returns:
        bool: True if transition is valid, False otherwise.
    """
    if not transitions:
        return False
    if old_state not in transitions:
        return False
    return new_state in transitions[old_state]


def updateIfChanged(targetObj, sourceObj, fields: List[str]) -> None:
    """
    Update attributes on a target object from a source object
    only if the values differ and the new value is not None.

    `sourceObj` may be any object or a plain dict. Fields are typically
    provided as `Model.field.key`.

    Example:
        >>> updateIfChanged(role, patch, [Role.name.key, Role.description.key])
        # role is updated where values differ; unchanged fields are skipped silently
    """
    for field in fields:
        if isinstance(sourceObj, dict):
            newValue = sourceObj.get(field)
        else:
            newValue = getattr(sourceObj, field, None)
        if newValue is not None:
            oldValue = getattr(targetObj, field)
            if oldValue != newValue:
                setattr(targetObj, field, newValue)
