from routehub.src import openobserve
from routehub.src.schemas import Identity, RequestInfo


def logEvent(identity: Identity, requestInfo: RequestInfo, data: dict) -> None:
    """
    Log an audit event to OpenObserve with request and caller context.

    Args:
        identity (Identity): Authenticated caller.
        requestInfo (RequestInfo): Metadata about the current request.
        data (dict): Event-specific details (usually the jsonable entity).

    Notes:
        - Attaches `_method`, `_path`, `_app_id`, `_user_id`, `_organization_id` and `_role`.
        - `_organization_id` is None for platform superadmin calls.
    """
    logDetails = {
        "_method": requestInfo.method,
        "_path": requestInfo.path,
        "_app_id": requestInfo.app_id,
        "_user_id": str(identity.id),
        "_organization_id": (
            str(identity.organization_id) if identity.organization_id else None
        ),
        "_role": identity.role.value,
    }
    logDetails.update(data)
    openobserve.logEvent(logDetails)
