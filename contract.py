"""
Contract framework for the in-memory ledger

Contracts are plain Python classes whose `@external` methods are reachable
through ABI-encoded calldata, exactly like deployed bytecode would be.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type

from eth_abi.exceptions import DecodingError
from eth_abi.grammar import TupleType, parse
from web3 import Web3

from encoding import decode_args, decode_result, encode_args, encode_call, selector, split_signature, split_types
from errors import ExecutionReverted


# creation code identity -> contract class, used to instantiate init code
_CREATION_CODES: Dict[bytes, Type["Contract"]] = {}


@dataclass(frozen=True)
class Message:
    """Execution context of one call frame"""
    chain: Any
    sender: str
    address: str
    value: int = 0


def abi_parameter(type_str: str, name: str = "", indexed: Optional[bool] = None) -> Dict[str, Any]:
    """JSON ABI entry of one parameter; tuples expand into components"""
    parsed = parse(type_str)
    if isinstance(parsed, TupleType):
        suffix = "".join(f"[{''.join(str(d) for d in dim)}]" for dim in parsed.arrlist or ())
        entry = {
            "name": name,
            "type": "tuple" + suffix,
            "components": [abi_parameter(c.to_type_str()) for c in parsed.components],
        }
    else:
        entry = {"name": name, "type": type_str}
    if indexed is not None:
        entry["indexed"] = indexed
    return entry


@dataclass(frozen=True)
class ExternalFunction:
    signature: str
    returns: Tuple[str, ...]
    payable: bool
    view: bool
    attribute: str

    @property
    def selector(self) -> bytes:
        return selector(self.signature)

    @property
    def name(self) -> str:
        return split_signature(self.signature)[0]

    @property
    def argument_types(self) -> List[str]:
        return split_signature(self.signature)[1]

    def abi(self) -> Dict[str, Any]:
        if self.payable:
            mutability = "payable"
        elif self.view:
            mutability = "view"
        else:
            mutability = "nonpayable"
        return {
            "type": "function",
            "name": self.name,
            "inputs": [abi_parameter(t) for t in self.argument_types],
            "outputs": [abi_parameter(t) for t in self.returns],
            "stateMutability": mutability,
        }


def external(signature: str, returns: str = "", payable: bool = False, view: bool = False) -> Callable:
    """Expose a contract method under its canonical ABI signature"""
    def decorator(fn):
        fn.__external__ = ExternalFunction(
            signature=signature,
            returns=tuple(split_types(returns)),
            payable=payable,
            view=view,
            attribute=fn.__name__,
        )
        return fn
    return decorator


@dataclass(frozen=True)
class EventField:
    name: str
    type: str
    indexed: bool = False


class Event:
    """Log declaration; indexed fields become topics, the rest is ABI data"""

    def __init__(self, name: str, *fields: EventField):
        self.name = name
        self.fields = fields

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(f.type for f in self.fields)})"

    @property
    def topic(self) -> bytes:
        return bytes(Web3.keccak(text=self.signature))

    def encode(self, values: Sequence[Any]) -> Tuple[List[bytes], bytes]:
        if len(values) != len(self.fields):
            raise ValueError(f"{self.name} expects {len(self.fields)} values, got {len(values)}")
        topics = [self.topic]
        data_types, data_values = [], []
        for field, value in zip(self.fields, values):
            if field.indexed:
                topics.append(encode_args([field.type], [value]))
            else:
                data_types.append(field.type)
                data_values.append(value)
        return topics, encode_args(data_types, data_values)

    def abi(self) -> Dict[str, Any]:
        return {
            "type": "event",
            "name": self.name,
            "anonymous": False,
            "inputs": [abi_parameter(f.type, f.name, indexed=f.indexed) for f in self.fields],
        }

    def matches(self, log) -> bool:
        return bool(log.topics) and bytes(log.topics[0]) == self.topic

    def decode(self, log) -> Dict[str, Any]:
        """Turn a log emitted for this event back into a field dict"""
        if not self.matches(log):
            raise ValueError(f"Log is not a {self.name} event")
        indexed = iter(log.topics[1:])
        data_fields = [f for f in self.fields if not f.indexed]
        data_values = iter(decode_args([f.type for f in data_fields], log.data))
        decoded = {}
        for field in self.fields:
            if field.indexed:
                decoded[field.name] = decode_args([field.type], next(indexed))[0]
            else:
                decoded[field.name] = next(data_values)
        return decoded


class Contract:
    """Base class for ledger contracts

    Subclasses declare `constructor_types` and implement `constructor`;
    they must only keep plain data on `self` so the ledger can snapshot it.
    """

    constructor_types: Tuple[str, ...] = ()
    events: Tuple[Event, ...] = ()
    _functions: Dict[bytes, ExternalFunction] = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        functions = {}
        for klass in reversed(cls.__mro__):
            for attribute in vars(klass).values():
                spec = getattr(attribute, "__external__", None)
                if spec is not None:
                    functions[spec.selector] = spec
        cls._functions = functions
        _CREATION_CODES[cls.creation_code()] = cls

    @classmethod
    def creation_code(cls) -> bytes:
        return bytes(Web3.keccak(text=f"{cls.__name__}:creation"))

    @classmethod
    def runtime_code(cls) -> bytes:
        return bytes(Web3.keccak(text=f"{cls.__name__}:runtime"))

    @classmethod
    def init_code(cls, *constructor_args: Any) -> bytes:
        """Creation code followed by the ABI-encoded constructor arguments"""
        return cls.creation_code() + encode_args(cls.constructor_types, constructor_args)

    @classmethod
    def abi(cls) -> List[Dict[str, Any]]:
        """JSON ABI for web3 contract objects"""
        entries = [function.abi() for function in cls._functions.values()]
        entries.extend(event.abi() for event in cls.events)
        if cls.constructor_types:
            entries.append({
                "type": "constructor",
                "inputs": [abi_parameter(t) for t in cls.constructor_types],
                "stateMutability": "nonpayable",
            })
        return entries

    def constructor(self, msg: Message, *args: Any) -> None:
        pass

    def receive(self, msg: Message) -> None:
        raise ExecutionReverted(f"{type(self).__name__} does not accept plain transfers")

    def dispatch(self, msg: Message, data: bytes) -> bytes:
        if not data:
            self.receive(msg)
            return b""
        spec = self._functions.get(bytes(data[:4]))
        if spec is None:
            raise ExecutionReverted(f"{type(self).__name__}: unknown selector 0x{bytes(data[:4]).hex()}")
        if msg.value and not spec.payable:
            raise ExecutionReverted(f"{spec.signature} is not payable")
        try:
            args = decode_args(spec.argument_types, data[4:])
        except DecodingError as e:
            raise ExecutionReverted(f"invalid calldata for {spec.signature}") from e

        result = getattr(self, spec.attribute)(msg, *args)

        if not spec.returns:
            return b""
        if len(spec.returns) == 1:
            result = (result,)
        return encode_args(spec.returns, result)

    # helpers for contract code

    def call(self, msg: Message, target: str, data: bytes, value: int = 0) -> bytes:
        """Call another account from this contract"""
        return msg.chain.call(msg.address, target, value, data)

    def read(self, msg: Message, target: str, signature: str, *args: Any, returns: str) -> Any:
        data = self.call(msg, target, encode_call(signature, *args))
        try:
            return decode_result(returns, data)
        except DecodingError as e:
            raise ExecutionReverted(f"{signature} on {target} returned malformed data") from e

    def emit(self, msg: Message, event: Event, *values: Any) -> None:
        msg.chain.emit(msg.address, event, values)


def contract_for_init_code(init_code: bytes) -> Optional[Tuple[Type[Contract], Tuple[Any, ...]]]:
    """Resolve init code to the contract class and its decoded constructor args"""
    contract_type = _CREATION_CODES.get(bytes(init_code[:32]))
    if contract_type is None:
        return None
    try:
        args = decode_args(contract_type.constructor_types, init_code[32:])
    except DecodingError as e:
        raise ExecutionReverted(f"invalid constructor arguments for {contract_type.__name__}") from e
    return contract_type, args
