"""
Patient appointment operations.

The patient routes of the HTTP layer hand their already-validated input to
these coroutines, which forward it to the appointment workers over the
broker and return the normalized `Reply`.
"""
from typing import Any, Optional

from api_gateway.bridge.dispatcher import RequestDispatcher
from api_gateway.models import Reply, decode_reply

MAKE_APPOINTMENT = "make_appointment"
GET_APPOINTMENTS = "get_appointments"
GET_APPOINTMENT = "get_appointment"
CANCEL_APPOINTMENT = "cancel_appointment"


class AppointmentService:
    def __init__(self, dispatcher: RequestDispatcher, timeout: Optional[float] = None):
        self.dispatcher = dispatcher
        self.timeout = timeout

    async def _request(self, operation: str, payload: Any) -> Reply:
        return await self.dispatcher.call(operation, payload, timeout=self.timeout, decoder=decode_reply)

    async def make_appointment(self, patient_id: str, slot: str, **details: Any) -> Reply:
        return await self._request(MAKE_APPOINTMENT, {"patientId": patient_id, "slot": slot, **details})

    async def list_appointments(self, patient_id: str) -> Reply:
        return await self._request(GET_APPOINTMENTS, {"patientId": patient_id})

    async def get_appointment(self, patient_id: str, appointment_id: str) -> Reply:
        return await self._request(GET_APPOINTMENT, {"patientId": patient_id, "appointmentId": appointment_id})

    async def cancel_appointment(self, patient_id: str, appointment_id: str) -> Reply:
        return await self._request(CANCEL_APPOINTMENT, {"patientId": patient_id, "appointmentId": appointment_id})
