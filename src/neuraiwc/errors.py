"""
Error taxonomy for the bridge.

Every error a component can return to a dApp is a BridgeError subclass with a
fixed JSON-RPC error code. The dispatcher maps them 1:1 to error responses.
"""

from __future__ import annotations

from typing import Any, ClassVar


class BridgeError(Exception):
    """Base class for errors surfaced over the JSON-RPC boundary."""

    code: ClassVar[int] = -32603

    def __init__(self, message: str, *, data: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.data = data

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data:
            payload["data"] = self.data
        return payload


class InvalidParams(BridgeError):
    code = -32602


class InternalError(BridgeError):
    code = -32603


class Unauthorized(BridgeError):
    code = 4100


class UnsupportedMethod(BridgeError):
    code = 4200


class UnsupportedChain(BridgeError):
    code = 5100


class InvalidChainId(BridgeError, ValueError):
    code = 5201


class InvalidAccountId(BridgeError, ValueError):
    code = 5202


class PsbtPipelineError(BridgeError):
    """
    PSBT pipeline failure naming the step and, where relevant, the input.

    Pipeline errors are never generic: the message always says which step
    failed and which input index caused it.
    """

    step: ClassVar[str] = "psbt"

    def __init__(self, reason: str, *, input_index: int | None = None, step: str | None = None):
        self.reason = reason
        self.input_index = input_index
        self.failed_step = step or self.step
        where = f" input {input_index}:" if input_index is not None else ""
        data: dict[str, Any] = {"step": self.failed_step}
        if input_index is not None:
            data["input"] = input_index
        super().__init__(f"{self.failed_step}:{where} {reason}", data=data)


class MalformedPsbt(PsbtPipelineError):
    code = 6001
    step = "decode"


class UnknownInput(PsbtPipelineError):
    code = 6002
    step = "verify_inputs"


class IncompleteSignatures(PsbtPipelineError):
    code = 6003
    step = "finalize"

    def __init__(self, reason: str, *, missing: list[int] | None = None, step: str | None = None):
        self.missing = missing or []
        super().__init__(
            reason, input_index=self.missing[0] if self.missing else None, step=step
        )
        if self.missing and self.data is not None:
            self.data["missing"] = self.missing


class SigningDenied(PsbtPipelineError):
    code = 6004
    step = "sign"


class InsufficientFunds(BridgeError):
    code = 6101

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient funds: need {required} sats, have {available} sats",
            data={"required": required, "available": available},
        )


class RpcError(BridgeError):
    """
    Chain node failure.

    transient=True marks failures worth retrying (network errors, node warming
    up). Rejections by consensus or policy rules are never transient.
    """

    code = 6201

    def __init__(self, message: str, *, rpc_code: int | None = None, transient: bool = False):
        self.rpc_code = rpc_code
        self.transient = transient
        data: dict[str, Any] = {"transient": transient}
        if rpc_code is not None:
            data["rpcCode"] = rpc_code
        super().__init__(message, data=data)


class TransportTimeout(BridgeError):
    code = 6301


class TransportError(Exception):
    """Raised by transport implementations when a topic cannot be reached."""

    pass
