"""
Raw (vendor-defined) PDUs

pymodbus only decodes the function codes it knows. Vendor-defined
functions are sent as a pre-encoded payload and answered with a response
class registered on the client for that function code. The framer reads
the MBAP length header (TCP) to pull the complete response, so no word
count logic is needed here.
"""

from pymodbus.pdu import ModbusPDU


# start_register reported for a raw request
CUSTOM_REGISTER = 0xFFFF


class RawRequest(ModbusPDU):
    """Request whose data section is supplied by the caller"""

    function_code = 0

    def __init__(
        self,
        function_code: int = 0,
        payload: bytes = b"",
        device_id: int = 1,
        transaction_id: int = 0,
    ):
        super().__init__(dev_id=device_id, transaction_id=transaction_id)
        self.function_code = function_code
        self.payload = bytes(payload)

    def encode(self) -> bytes:
        return self.payload

    def decode(self, data: bytes) -> None:
        self.payload = bytes(data)


class RawResponse(ModbusPDU):
    """Response keeping every byte that follows the function code"""

    function_code = 0
    # Byte count position used by the RTU framer
    rtu_byte_count_pos = 2

    def __init__(self, device_id: int = 1, transaction_id: int = 0):
        super().__init__(dev_id=device_id, transaction_id=transaction_id)
        self.payload = b""

    def encode(self) -> bytes:
        return self.payload

    def decode(self, data: bytes) -> None:
        self.payload = bytes(data)


_response_classes: dict[int, type[RawResponse]] = {}


def response_class_for(function_code: int) -> type[RawResponse]:
    """RawResponse subclass bound to ``function_code`` (cached)"""
    cls = _response_classes.get(function_code)
    if cls is None:
        cls = type(
            f"RawResponse{function_code:02X}",
            (RawResponse,),
            {"function_code": function_code},
        )
        _response_classes[function_code] = cls
    return cls
