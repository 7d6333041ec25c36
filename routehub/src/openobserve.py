import base64, json, requests
from logging import getLogger
from typing import Optional
from requests import Response
from requests.exceptions import RequestException

from routehub.src.constants import (
    OPENOBSERVE_ENABLED,
    OPENOBSERVE_HOST,
    OPENOBSERVE_ORG,
    OPENOBSERVE_PASSWORD,
    OPENOBSERVE_PORT,
    OPENOBSERVE_PROTOCOL,
    OPENOBSERVE_STREAM,
    OPENOBSERVE_USERNAME,
)

logger = getLogger("OpenObserve")

credentials = base64.b64encode(
    bytes(OPENOBSERVE_USERNAME + ":" + OPENOBSERVE_PASSWORD, "utf-8")
).decode("utf-8")

headers = {"Content-type": "application/json", "Authorization": "Basic " + credentials}

openobserveHost = f"{OPENOBSERVE_PROTOCOL}://{OPENOBSERVE_HOST}:{OPENOBSERVE_PORT}"
openobserveURL = f"{openobserveHost}/api/{OPENOBSERVE_ORG}/{OPENOBSERVE_STREAM}/_json"


def logEvent(eventData: dict) -> Optional[Response]:
    """
    Send an audit event to the configured OpenObserve stream.

    The event is serialized as JSON and posted with Basic authentication.
    A failure to reach OpenObserve is logged and never fails the request
    that produced the event.

    Args:
        eventData (dict): The event document.
            Example:
                {
                    "_method": "POST",
                    "_path": "/organization/trip/location",
                    "_app_id": 2,
                    "_user_id": "6c0e...",
                    "_organization_id": "b41a...",
                    "_role": "driver",
                }

    Returns:
        requests.Response | None: The OpenObserve response, or None when shipping
        is disabled or failed.
    """
    if not OPENOBSERVE_ENABLED:
        return None
    try:
        return requests.post(
            openobserveURL, headers=headers, data=json.dumps(eventData), timeout=5
        )
    except RequestException as e:
        logger.warning("Failed to ship audit event: %s", e)
        return None
