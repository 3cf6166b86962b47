"""Twilio Programmable Voice client for conference bridging.

Features:
- Conference TwiML with status callbacks
- Dial-out of agents and queues into a conference
- Lookup of a customer's live call by destination number
- In-place call modification (seamless conference join)
- Conference status, teardown and participant removal
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from html import escape as html_escape
from typing import Any

import httpx
from bridge_shared import get_logger

from campaign_bridge.core.exceptions import TelephonyError

log = get_logger(__name__)

CONFERENCE_EVENTS = "start end join leave"
CALL_STATUS_EVENTS = ("initiated", "ringing", "answered", "completed")


def _escape(value: str) -> str:
    return html_escape(value, quote=True)


class TwilioVoiceClient:
    """Twilio REST client for voice calls and conferences.

    API Documentation: https://www.twilio.com/docs/voice/api

    Attributes:
        account_sid: Twilio Account SID
        from_number: Caller id used for outbound legs and call search
        conference_callback_url: Where conference status callbacks are posted
    """

    API_BASE = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        conference_callback_url: str = "",
        active_call_window_minutes: int = 30,
        timeout: float = 30.0,
    ):
        """Initialize Twilio voice client.

        Args:
            account_sid: Twilio Account SID
            auth_token: Twilio Auth Token
            from_number: Outbound caller id (E.164 format)
            conference_callback_url: Status callback for conference events
            active_call_window_minutes: Recency window for live call lookup
            timeout: HTTP request timeout
        """
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.conference_callback_url = conference_callback_url
        self.active_call_window_minutes = active_call_window_minutes

        auth = httpx.BasicAuth(account_sid, auth_token)
        self._client = httpx.AsyncClient(
            base_url=f"{self.API_BASE}/Accounts/{account_sid}",
            auth=auth,
            timeout=timeout,
            headers={
                "Accept": "application/json",
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request to the account API.

        Raises:
            TelephonyError: On transport errors and non-2xx responses
        """
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            log.error("Twilio request timeout", method=method, url=url)
            raise TelephonyError(
                "Telephony request timed out",
                details={"method": method, "url": url},
                cause=e,
            ) from e
        except httpx.HTTPError as e:
            log.error("Twilio HTTP error", method=method, url=url, error=str(e))
            raise TelephonyError(
                f"Telephony request failed: {e}",
                details={"method": method, "url": url},
                cause=e,
            ) from e

        if response.status_code not in (200, 201, 204):
            try:
                error_data = response.json() if response.content else {}
            except (ValueError, TypeError):
                error_data = {}
            error_code = str(error_data.get("code", response.status_code))
            error_message = error_data.get("message", f"HTTP {response.status_code}")

            log.error(
                "Twilio API error",
                method=method,
                url=url,
                status_code=response.status_code,
                error_code=error_code,
                error=error_message,
            )
            raise TelephonyError(
                f"[{error_code}] {error_message}",
                details={"status_code": response.status_code, "twilio_code": error_code},
            )

        if not response.content:
            return {}
        return response.json()

    # ========================================================================
    # TwiML
    # ========================================================================

    def conference_twiml(self, conference_id: str, welcome_message: str | None = None) -> str:
        """TwiML that places the current leg into a conference room."""
        say = f'<Say voice="alice">{_escape(welcome_message)}</Say>' if welcome_message else ""
        callback = ""
        if self.conference_callback_url:
            callback = (
                f' statusCallback="{_escape(self.conference_callback_url)}"'
                f' statusCallbackEvent="{CONFERENCE_EVENTS}"'
                ' statusCallbackMethod="POST"'
            )
        return (
            "<Response>"
            f"{say}"
            "<Dial>"
            f'<Conference beep="false"{callback}'
            ' endConferenceOnExit="false" startConferenceOnEnter="true">'
            f"{_escape(conference_id)}"
            "</Conference>"
            "</Dial>"
            "</Response>"
        )

    @staticmethod
    def dial_number_twiml(number: str, message: str | None = None) -> str:
        """TwiML that transfers the current leg to a phone number."""
        say = f"<Say>{_escape(message)}</Say>" if message else ""
        return f"<Response>{say}<Dial><Number>{_escape(number)}</Number></Dial></Response>"

    @staticmethod
    def hangup_twiml(message: str | None = None) -> str:
        say = f"<Say>{_escape(message)}</Say>" if message else ""
        return f"<Response>{say}<Hangup/></Response>"

    # ========================================================================
    # Calls
    # ========================================================================

    async def dial_into_conference(
        self,
        to: str,
        conference_id: str,
        whisper_message: str | None = None,
    ) -> dict[str, Any]:
        """Place an outbound call that joins a conference when answered.

        Returns:
            Twilio call resource (``sid`` identifies the leg)
        """
        data: dict[str, Any] = {
            "To": to,
            "From": self.from_number,
            "Twiml": self.conference_twiml(conference_id, whisper_message),
        }
        if self.conference_callback_url:
            data["StatusCallback"] = self.conference_callback_url
            data["StatusCallbackMethod"] = "POST"
            data["StatusCallbackEvent"] = list(CALL_STATUS_EVENTS)

        call = await self._request("POST", "/Calls.json", data=data)
        log.info("Dialed into conference", call_sid=call.get("sid"), to=to, conference_id=conference_id)
        return call

    async def find_active_call_by_phone(self, to: str) -> dict[str, Any] | None:
        """Find the customer's live call placed from our number.

        Only in-progress calls started within the recency window match.
        Lookup errors are logged and reported as "not found".

        Returns:
            Most recent matching call resource, or None
        """
        since = datetime.now(timezone.utc) - timedelta(minutes=self.active_call_window_minutes)
        params = {
            "To": to,
            "From": self.from_number,
            "Status": "in-progress",
            "StartTime>": since.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "PageSize": 10,
        }

        try:
            result = await self._request("GET", "/Calls.json", params=params)
        except TelephonyError as e:
            log.error("Active call lookup failed", to=to, error=e.message)
            return None

        calls = result.get("calls") or []
        if not calls:
            log.warning("No active call found", to=to, from_number=self.from_number)
            return None

        call = calls[0]
        log.info(
            "Found active call",
            to=to,
            call_sid=call.get("sid"),
            start_time=call.get("start_time"),
        )
        return call

    async def modify_call_to_join_conference(
        self,
        call_sid: str,
        conference_id: str,
        welcome_message: str | None = None,
    ) -> dict[str, Any]:
        """Replace a live call's instructions so it joins a conference."""
        call = await self._request(
            "POST",
            f"/Calls/{call_sid}.json",
            data={"Twiml": self.conference_twiml(conference_id, welcome_message)},
        )
        log.info(
            "Modified call to join conference",
            call_sid=call_sid,
            conference_id=conference_id,
            status=call.get("status"),
        )
        return call

    async def remove_participant(self, call_sid: str) -> None:
        """Hang up a conference leg."""
        await self._request("POST", f"/Calls/{call_sid}.json", data={"Status": "completed"})
        log.info("Removed conference participant", call_sid=call_sid)

    # ========================================================================
    # Conferences
    # ========================================================================

    async def _find_conference(self, conference_id: str) -> dict[str, Any] | None:
        result = await self._request(
            "GET",
            "/Conferences.json",
            params={"FriendlyName": conference_id, "Status": "in-progress", "PageSize": 1},
        )
        conferences = result.get("conferences") or []
        return conferences[0] if conferences else None

    async def get_conference_status(self, conference_id: str) -> dict[str, Any]:
        """Live conference state with its participants."""
        conference = await self._find_conference(conference_id)
        if conference is None:
            return {"status": "not_found"}

        result = await self._request("GET", f"/Conferences/{conference['sid']}/Participants.json")
        participants = result.get("participants") or []

        return {
            "sid": conference["sid"],
            "friendlyName": conference.get("friendly_name"),
            "status": conference.get("status"),
            "participantCount": len(participants),
            "participants": [
                {
                    "callSid": p.get("call_sid"),
                    "muted": p.get("muted"),
                    "hold": p.get("hold"),
                    "startTime": p.get("date_created"),
                }
                for p in participants
            ],
            "dateCreated": conference.get("date_created"),
            "dateUpdated": conference.get("date_updated"),
        }

    async def end_conference(self, conference_id: str) -> bool:
        """Complete a live conference.

        Returns:
            True if a live conference was found and ended
        """
        conference = await self._find_conference(conference_id)
        if conference is None:
            log.info("Conference already finished", conference_id=conference_id)
            return False

        await self._request(
            "POST",
            f"/Conferences/{conference['sid']}.json",
            data={"Status": "completed"},
        )
        log.info("Conference ended", conference_id=conference_id, sid=conference["sid"])
        return True

    # ========================================================================
    # Diagnostics
    # ========================================================================

    async def validate_configuration(self) -> dict[str, Any]:
        """Check credentials and API access for seamless transfers."""
        report: dict[str, Any] = {
            "accountSid": bool(self.account_sid),
            "authToken": bool(self.auth_token),
            "phoneNumber": bool(self.from_number),
            "conferenceCallback": bool(self.conference_callback_url),
            "apiAccess": False,
        }

        if report["accountSid"] and report["authToken"]:
            try:
                await self._request("GET", "/IncomingPhoneNumbers.json", params={"PageSize": 1})
                report["apiAccess"] = True
            except TelephonyError as e:
                report["apiError"] = e.message

        report["valid"] = all(
            report[name] for name in ("accountSid", "authToken", "phoneNumber", "apiAccess")
        )
        log.info("Twilio configuration validated", **report)
        return report
