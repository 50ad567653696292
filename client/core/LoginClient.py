"""Login server round trip.

The chat socket hands out a one-time challstr; the login server turns
(userid, challstr[, password]) into a signed assertion which is then sent
back over the socket with ``/trn``.

Request shapes:
- No password: GET  ?act=getassertion&userid=<id>&challstr=<challstr>
- Password:    POST act=login&name=<id>&pass=<password>&challstr=<challstr>
               (application/x-www-form-urlencoded)

Response body is one of:
- ``;``                          registered name, wrong or missing password
- a short diagnostic string      login server error
- text containing "heavy load"   login server overloaded
- ``]`` + JSON {"actionsuccess": bool, "assertion": str, ...}
- (GET) the bare assertion string
"""

from __future__ import annotations

import json
from typing import Optional

import httpx

from client.core.MessageTypes import (
    LOGIN_REJECTED_BODY,
    LOGIN_RESPONSE_PREFIX,
    MIN_LOGIN_RESPONSE_LENGTH,
    OVERLOAD_MARKER,
)
from client.errors import (
    LoginRejectedError,
    LoginServerError,
    LoginServerOverloadedError,
    LoginUnsuccessfulError,
)
from shared.config import DEFAULT_LOGIN_URL
from shared.log import get_logger

logger = get_logger(__name__)


class LoginClient:
    """Performs the HTTP half of the login handshake."""

    def __init__(
        self,
        url: str = DEFAULT_LOGIN_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Args:
            url: Login endpoint (action.php)
            timeout: HTTP timeout in seconds for the whole exchange
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def request_assertion(self, userid: str, challstr: str, password: Optional[str] = None) -> str:
        """
        Send the login request and return the raw response body.

        Raises:
            httpx.HTTPError: on transport-level failure
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            if not password:
                response = await client.get(
                    self.url,
                    params={"act": "getassertion", "userid": userid, "challstr": challstr},
                )
            else:
                response = await client.post(
                    self.url,
                    data={"act": "login", "name": userid, "pass": password, "challstr": challstr},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            logger.debug("Login server answered HTTP %s (%d bytes)", response.status_code, len(response.content))
            return response.text


def extract_assertion(body: str, nick: str, has_password: bool) -> str:
    """
    Interpret a login server response body and return the assertion token.

    Raises:
        LoginRejectedError: body is exactly ';'
        LoginServerError: body shorter than the minimum response length
        LoginServerOverloadedError: body mentions heavy load
        LoginUnsuccessfulError: JSON response with actionsuccess false
    """
    if body == LOGIN_REJECTED_BODY:
        raise LoginRejectedError(nick, has_password)
    if len(body) < MIN_LOGIN_RESPONSE_LENGTH:
        raise LoginServerError(body)
    if OVERLOAD_MARKER in body:
        raise LoginServerOverloadedError()

    stripped = body[len(LOGIN_RESPONSE_PREFIX):] if body.startswith(LOGIN_RESPONSE_PREFIX) else body
    try:
        data = json.loads(stripped)
    except ValueError:
        data = None

    if not isinstance(data, dict):
        # GET getassertion answers with the bare assertion; anything else here
        # is protocol drift and will most likely be refused by /trn.
        if body.startswith(LOGIN_RESPONSE_PREFIX):
            logger.warning("Login response was not valid JSON; using it verbatim as the assertion")
        return stripped

    if not data.get("actionsuccess"):
        raise LoginUnsuccessfulError(body)
    assertion = data.get("assertion")
    if not isinstance(assertion, str) or not assertion:
        raise LoginUnsuccessfulError(body)
    return assertion
