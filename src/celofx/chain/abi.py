"""Minimal ABI helpers: call encoding, output decoding and event log decoding."""

from dataclasses import dataclass
from typing import Any, Optional, Sequence

from eth_abi import decode, encode
from web3 import Web3


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def split_types(type_list: str) -> list[str]:
    """Split a comma-separated ABI type list, keeping tuples intact.

    Example:
        split_types("address,(uint256,bool),bytes32") -> ["address", "(uint256,bool)", "bytes32"]
    """
    types: list[str] = []
    depth = 0
    current = ""
    for char in type_list:
        if char == "," and depth == 0:
            types.append(current.strip())
            current = ""
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        current += char
    if current.strip():
        types.append(current.strip())
    return types


def argument_types(signature: str) -> list[str]:
    """Parse the argument types out of ``name(type,...)``."""
    return split_types(signature[signature.index("(") + 1 : signature.rindex(")")])


def function_selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature))[:4]


def encode_call(signature: str, args: Sequence[Any] = ()) -> str:
    """ABI-encode a function call as 0x-prefixed calldata."""
    payload = function_selector(signature) + encode(argument_types(signature), list(args))
    return "0x" + payload.hex()


def decode_output(types: Sequence[str], data: str) -> tuple:
    return decode(list(types), bytes.fromhex(_strip_0x(data)))


@dataclass(frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSpec:
    """An event definition sufficient to decode its logs."""

    name: str
    inputs: tuple[EventInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic(self) -> str:
        return "0x" + bytes(Web3.keccak(text=self.signature)).hex()


@dataclass
class DecodedLog:
    """A log matched against an EventSpec."""

    event: str
    address: str
    args: dict[str, Any]
    log_index: Optional[int] = None


TRANSFER_EVENT = EventSpec(
    name="Transfer",
    inputs=(
        EventInput("from", "address", indexed=True),
        EventInput("to", "address", indexed=True),
        EventInput("value", "uint256"),
    ),
)


def decode_log(event: EventSpec, log: dict) -> Optional[DecodedLog]:
    """Decode a raw JSON-RPC log entry.

    Returns:
        DecodedLog, or None if the log is not an instance of ``event``
    """
    topics = log.get("topics") or []
    indexed = [i for i in event.inputs if i.indexed]
    if not topics or topics[0].lower() != event.topic or len(topics) != len(indexed) + 1:
        return None

    args: dict[str, Any] = {}
    for spec, topic in zip(indexed, topics[1:]):
        (args[spec.name],) = decode([spec.type], bytes.fromhex(_strip_0x(topic)))

    non_indexed = [i for i in event.inputs if not i.indexed]
    if non_indexed:
        values = decode([i.type for i in non_indexed], bytes.fromhex(_strip_0x(log.get("data", "0x"))))
        args.update({spec.name: value for spec, value in zip(non_indexed, values)})

    log_index = log.get("logIndex")
    return DecodedLog(
        event=event.name,
        address=log.get("address", ""),
        args=args,
        log_index=int(log_index, 16) if isinstance(log_index, str) else log_index,
    )
