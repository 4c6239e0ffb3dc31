"""
Stable serialization of typed values for marshalled attributes.

Marshalled attributes are stored in the Ruby Marshal 4.8 binary layout,
the format of every marshalled value written by earlier engine versions.
Treat it as a fixed wire contract: ``dumps`` is deterministic (the same
value always produces the same bytes) and ``loads`` accepts everything
earlier writers produced for the supported types.

Supported Python types and their wire forms:

    ==========================  =====================================
    None / True / False         nil / true / false
    int                         Fixnum, or Bignum outside 31 bits
    float                       Float
    str                         String tagged UTF-8
    bytes                       String without encoding (binary)
    Symbol                      Symbol
    list (tuple on write)       Array
    dict                        Hash
    fractions.Fraction          Rational
    decimal.Decimal             BigDecimal
    datetime.date               Date
    datetime.datetime (aware)   DateTime
    RubyObject                  plain object with instance variables
    ==========================  =====================================
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from fractions import Fraction
from typing import Any, Dict, List, Optional

from .exceptions import SerializationError

HEADER = bytes([4, 8])
MAJOR_VERSION = 4
MINOR_VERSION = 8

# Range written as Fixnum; everything else is a Bignum.
FIXNUM_MIN = -(2 ** 30)
FIXNUM_MAX = 2 ** 30 - 1

# Julian day number of 0001-01-01 is JD_ORDINAL_OFFSET + 1.
JD_ORDINAL_OFFSET = 1721425
# Period Ruby uses to split huge day numbers into (nth, jd).
CM_PERIOD = 213447717
# Gregorian reform day stored with every Date (Date::ITALY).
ITALY = 2299161.0
SECONDS_PER_DAY = 86400

TYPE_NIL = ord('0')
TYPE_TRUE = ord('T')
TYPE_FALSE = ord('F')
TYPE_FIXNUM = ord('i')
TYPE_BIGNUM = ord('l')
TYPE_FLOAT = ord('f')
TYPE_STRING = ord('"')
TYPE_SYMBOL = ord(':')
TYPE_SYMLINK = ord(';')
TYPE_LINK = ord('@')
TYPE_IVAR = ord('I')
TYPE_ARRAY = ord('[')
TYPE_HASH = ord('{')
TYPE_HASH_DEF = ord('}')
TYPE_USRMARSHAL = ord('U')
TYPE_USERDEF = ord('u')
TYPE_OBJECT = ord('o')
TYPE_UCLASS = ord('C')
TYPE_EXTENDED = ord('e')


class Symbol(str):
    """A Ruby symbol. Compares equal to the plain string of the same name."""

    __slots__ = ()

    def __repr__(self):
        return f"Symbol({str.__repr__(self)})"


@dataclass
class RubyObject:
    """
    A plain Ruby object carried through marshalling untouched.

    Attributes:
        class_name: Fully qualified class name, e.g. ``'Pet::Tag'``
        attributes: Instance variables keyed by name including the ``@``
    """

    class_name: str
    attributes: Dict[str, Any] = field(default_factory=dict)


def dumps(value: Any) -> bytes:
    """
    Serialize a value to marshal bytes.

    Raises:
        SerializationError: If the value (or something inside it) has no
            marshal representation
    """
    dumper = _Dumper()
    try:
        dumper.write_object(value)
    except RecursionError as e:
        raise SerializationError("Cannot marshal self-referencing value") from e
    return bytes(dumper.buffer)


def loads(data: bytes) -> Any:
    """
    Deserialize marshal bytes back into a value.

    Raises:
        SerializationError: If the data is truncated, malformed, or holds a
            type this module does not understand
    """
    if len(data) < 2:
        raise SerializationError("Marshalled data is too short")
    major, minor = data[0], data[1]
    if major != MAJOR_VERSION or minor > MINOR_VERSION:
        raise SerializationError(f"Incompatible marshal format {major}.{minor}")

    loader = _Loader(data, offset=2)
    try:
        value = loader.read_object()
    except (IndexError, ValueError, TypeError, ArithmeticError, RecursionError) as e:
        raise SerializationError(f"Malformed marshalled data: {e}") from e

    if loader.pos != len(data):
        raise SerializationError(
            f"Unexpected {len(data) - loader.pos} trailing bytes after marshalled value"
        )
    return value


class _Dumper:

    def __init__(self):
        self.buffer = bytearray(HEADER)
        self.symbols: Dict[str, int] = {}

    def write_byte(self, byte: int) -> None:
        self.buffer.append(byte & 0xff)

    def write_long(self, number: int) -> None:
        if number == 0:
            self.write_byte(0)
        elif 0 < number < 123:
            self.write_byte(number + 5)
        elif -124 < number < 0:
            self.write_byte(number - 5)
        else:
            chunk = bytearray()
            for size in range(1, 5):
                chunk.append(number & 0xff)
                number >>= 8
                if number == 0:
                    self.write_byte(size)
                    break
                if number == -1:
                    self.write_byte(-size)
                    break
            else:
                raise SerializationError("Length does not fit in a marshal long")
            self.buffer.extend(chunk)

    def write_bytes(self, data: bytes) -> None:
        self.write_long(len(data))
        self.buffer.extend(data)

    def write_symbol(self, name: str) -> None:
        if name in self.symbols:
            self.write_byte(TYPE_SYMLINK)
            self.write_long(self.symbols[name])
            return

        self.symbols[name] = len(self.symbols)
        raw = name.encode('utf-8')
        if raw.isascii():
            self.write_byte(TYPE_SYMBOL)
            self.write_bytes(raw)
        else:
            self.write_byte(TYPE_IVAR)
            self.write_byte(TYPE_SYMBOL)
            self.write_bytes(raw)
            self.write_long(1)
            self.write_symbol('E')
            self.write_byte(TYPE_TRUE)

    def write_object(self, value: Any) -> None:
        # bool before int, Symbol before str, datetime before date
        if value is None:
            self.write_byte(TYPE_NIL)
        elif value is True:
            self.write_byte(TYPE_TRUE)
        elif value is False:
            self.write_byte(TYPE_FALSE)
        elif isinstance(value, Symbol):
            self.write_symbol(str(value))
        elif isinstance(value, int):
            self.write_integer(value)
        elif isinstance(value, float):
            self.write_byte(TYPE_FLOAT)
            self.write_bytes(_format_float(value).encode('ascii'))
        elif isinstance(value, str):
            self.write_byte(TYPE_IVAR)
            self.write_byte(TYPE_STRING)
            self.write_bytes(value.encode('utf-8'))
            self.write_long(1)
            self.write_symbol('E')
            self.write_byte(TYPE_TRUE)
        elif isinstance(value, (bytes, bytearray)):
            self.write_byte(TYPE_STRING)
            self.write_bytes(bytes(value))
        elif isinstance(value, Fraction):
            self.write_user_marshal('Rational', [value.numerator, value.denominator])
        elif isinstance(value, Decimal):
            self.write_byte(TYPE_USERDEF)
            self.write_symbol('BigDecimal')
            self.write_bytes(_format_decimal(value).encode('ascii'))
        elif isinstance(value, datetime):
            self.write_user_marshal('DateTime', _datetime_to_marshal(value))
        elif isinstance(value, date):
            jd = value.toordinal() + JD_ORDINAL_OFFSET
            self.write_user_marshal('Date', [0, jd, 0, 0, 0, ITALY])
        elif isinstance(value, (list, tuple)):
            self.write_byte(TYPE_ARRAY)
            self.write_long(len(value))
            for item in value:
                self.write_object(item)
        elif isinstance(value, dict):
            self.write_byte(TYPE_HASH)
            self.write_long(len(value))
            for key, item in value.items():
                self.write_object(key)
                self.write_object(item)
        elif isinstance(value, RubyObject):
            self.write_byte(TYPE_OBJECT)
            self.write_symbol(value.class_name)
            self.write_long(len(value.attributes))
            for name, item in value.attributes.items():
                self.write_symbol(name)
                self.write_object(item)
        else:
            raise SerializationError(f"Cannot marshal value of type {type(value).__name__}")

    def write_integer(self, value: int) -> None:
        if FIXNUM_MIN <= value <= FIXNUM_MAX:
            self.write_byte(TYPE_FIXNUM)
            self.write_long(value)
            return

        magnitude = abs(value)
        shorts = (magnitude.bit_length() + 15) // 16
        self.write_byte(TYPE_BIGNUM)
        self.write_byte(ord('-') if value < 0 else ord('+'))
        self.write_long(shorts)
        self.buffer.extend(magnitude.to_bytes(shorts * 2, 'little'))

    def write_user_marshal(self, class_name: str, data: Any) -> None:
        self.write_byte(TYPE_USRMARSHAL)
        self.write_symbol(class_name)
        self.write_object(data)


class _Loader:

    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.pos = offset
        self.symbols: List[Symbol] = []
        self.objects: List[Any] = []

    def read_byte(self) -> int:
        if self.pos >= len(self.data):
            raise SerializationError("Marshalled data ends unexpectedly")
        byte = self.data[self.pos]
        self.pos += 1
        return byte

    def read_bytes(self, length: int) -> bytes:
        end = self.pos + length
        if length < 0 or end > len(self.data):
            raise SerializationError("Marshalled data ends unexpectedly")
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def read_long(self) -> int:
        c = self.read_byte()
        if c > 127:
            c -= 256
        if c == 0:
            return 0
        if c > 0:
            if c > 4:
                return c - 5
            number = 0
            for i in range(c):
                number |= self.read_byte() << (8 * i)
            return number
        if c < -4:
            return c + 5
        number = -1
        for i in range(-c):
            number &= ~(0xff << (8 * i))
            number |= self.read_byte() << (8 * i)
        return number

    def read_string(self) -> bytes:
        return self.read_bytes(self.read_long())

    def register(self, value: Any) -> int:
        self.objects.append(value)
        return len(self.objects) - 1

    def read_symbol(self) -> Symbol:
        kind = self.read_byte()
        if kind == TYPE_SYMLINK:
            return self.read_symlink()
        if kind == TYPE_SYMBOL:
            return self.read_symbol_body(with_ivars=False)
        if kind == TYPE_IVAR and self.read_byte() == TYPE_SYMBOL:
            return self.read_symbol_body(with_ivars=True)
        raise SerializationError(f"Expected a symbol, found type 0x{kind:02x}")

    def read_symlink(self) -> Symbol:
        index = self.read_long()
        if not 0 <= index < len(self.symbols):
            raise SerializationError(f"Symbol link {index} out of range")
        return self.symbols[index]

    def read_symbol_body(self, with_ivars: bool) -> Symbol:
        raw = self.read_string()
        try:
            symbol = Symbol(raw.decode('utf-8'))
        except UnicodeDecodeError as e:
            raise SerializationError("Symbol name is not valid UTF-8") from e
        self.symbols.append(symbol)
        if with_ivars:
            self.read_ivars()
        return symbol

    def read_ivars(self) -> Dict[str, Any]:
        ivars = {}
        for _ in range(self.read_long()):
            name = self.read_symbol()
            ivars[name] = self.read_object()
        return ivars

    def read_object(self) -> Any:
        kind = self.read_byte()

        if kind == TYPE_NIL:
            return None
        if kind == TYPE_TRUE:
            return True
        if kind == TYPE_FALSE:
            return False
        if kind == TYPE_FIXNUM:
            return self.read_long()
        if kind == TYPE_SYMBOL:
            return self.read_symbol_body(with_ivars=False)
        if kind == TYPE_SYMLINK:
            return self.read_symlink()

        if kind == TYPE_LINK:
            index = self.read_long()
            if not 0 <= index < len(self.objects):
                raise SerializationError(f"Object link {index} out of range")
            return self.objects[index]

        if kind == TYPE_IVAR:
            index = len(self.objects)
            value = self.read_object()
            ivars = self.read_ivars()
            if isinstance(value, bytes):
                value = _apply_encoding(value, ivars)
                self.objects[index] = value
            elif isinstance(value, RubyObject):
                value.attributes.update(ivars)
            return value

        if kind == TYPE_BIGNUM:
            sign = self.read_byte()
            magnitude = int.from_bytes(self.read_bytes(self.read_long() * 2), 'little')
            value = -magnitude if sign == ord('-') else magnitude
            self.register(value)
            return value

        if kind == TYPE_FLOAT:
            value = _parse_float(self.read_string())
            self.register(value)
            return value

        if kind == TYPE_STRING:
            value = self.read_string()
            self.register(value)
            return value

        if kind == TYPE_ARRAY:
            items: List[Any] = []
            self.register(items)
            for _ in range(self.read_long()):
                items.append(self.read_object())
            return items

        if kind in (TYPE_HASH, TYPE_HASH_DEF):
            mapping: Dict[Any, Any] = {}
            self.register(mapping)
            for _ in range(self.read_long()):
                key = self.read_object()
                try:
                    mapping[key] = self.read_object()
                except TypeError as e:
                    raise SerializationError(f"Unhashable hash key of type {type(key).__name__}") from e
            if kind == TYPE_HASH_DEF:
                # Hash default values have no Python counterpart.
                self.read_object()
            return mapping

        if kind == TYPE_USRMARSHAL:
            class_name = self.read_symbol()
            index = self.register(None)
            value = _load_user_marshal(class_name, self.read_object())
            self.objects[index] = value
            return value

        if kind == TYPE_USERDEF:
            class_name = self.read_symbol()
            value = _load_user_defined(class_name, self.read_string())
            self.register(value)
            return value

        if kind == TYPE_OBJECT:
            obj = RubyObject(class_name=str(self.read_symbol()))
            self.register(obj)
            obj.attributes.update(self.read_ivars())
            return obj

        if kind in (TYPE_UCLASS, TYPE_EXTENDED):
            self.read_symbol()
            return self.read_object()

        raise SerializationError(f"Unsupported marshal type 0x{kind:02x}")


def _apply_encoding(raw: bytes, ivars: Dict[str, Any]) -> Any:
    """Turn a tagged Ruby string into ``str``; untagged strings stay bytes."""
    if 'E' in ivars:
        encoding: Optional[str] = 'utf-8' if ivars['E'] else 'ascii'
    elif 'encoding' in ivars:
        name = ivars['encoding']
        encoding = name.decode('ascii') if isinstance(name, bytes) else str(name)
    else:
        return raw

    if encoding.upper() in ('ASCII-8BIT', 'BINARY'):
        return raw
    try:
        return raw.decode(encoding)
    except LookupError as e:
        raise SerializationError(f"Unknown string encoding {encoding!r}") from e
    except UnicodeDecodeError as e:
        raise SerializationError(f"String is not valid {encoding}") from e


def _format_float(value: float) -> str:
    if math.isnan(value):
        return 'nan'
    if math.isinf(value):
        return 'inf' if value > 0 else '-inf'
    if value == 0:
        return '-0' if math.copysign(1.0, value) < 0 else '0'

    # Shortest round-trip digits, laid out the way Ruby's w_float does
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    digits = ''.join(str(d) for d in digit_tuple)
    stripped = digits.rstrip('0')
    exponent += len(digits) - len(stripped)
    digits = stripped
    point = len(digits) + exponent

    sign = '-' if value < 0 else ''
    if point < -3 or point > len(digits):
        mantissa = digits[0] + ('.' + digits[1:] if len(digits) > 1 else '')
        return f"{sign}{mantissa}e{point - 1}"
    if point > 0:
        fraction = digits[point:]
        return f"{sign}{digits[:point]}" + (f".{fraction}" if fraction else '')
    return f"{sign}0.{'0' * -point}{digits}"


def _parse_float(raw: bytes) -> float:
    # Very old writers appended mantissa bytes after a NUL.
    text = raw.split(b'\x00', 1)[0].decode('ascii')
    return float(text)


def _format_decimal(value: Decimal) -> str:
    if value.is_nan():
        body = 'NaN'
    elif value.is_infinite():
        body = '-Infinity' if value < 0 else 'Infinity'
    else:
        sign, digits, exponent = value.as_tuple()
        text = ''.join(str(d) for d in digits)
        significant = text.rstrip('0')
        if not significant:
            body = '-0.0' if sign else '0.0'
        else:
            body = f"{'-' if sign else ''}0.{significant}e{exponent + len(text)}"
    precision = (len(body) // 9 + 2) * 9
    return f"{precision}:{body}"


def _load_user_defined(class_name: str, data: bytes) -> Any:
    if class_name == 'BigDecimal':
        try:
            _, body = data.decode('ascii').split(':', 1)
            return Decimal(body)
        except (UnicodeDecodeError, ValueError, InvalidOperation) as e:
            raise SerializationError("Malformed BigDecimal payload") from e
    raise SerializationError(f"Unsupported user-defined type {class_name}")


def _load_user_marshal(class_name: str, data: Any) -> Any:
    if class_name == 'Rational':
        numerator, denominator = data
        return Fraction(numerator, denominator)
    if class_name in ('Date', 'DateTime'):
        return _load_date(class_name, data)
    raise SerializationError(f"Unsupported marshalled type {class_name}")


def _date_from_jd(jd: int) -> date:
    try:
        return date.fromordinal(jd - JD_ORDINAL_OFFSET)
    except (ValueError, OverflowError) as e:
        raise SerializationError(f"Day number {jd} is outside the supported date range") from e


def _load_date(class_name: str, data: List[Any]) -> Any:
    if len(data) == 6:
        nth, jd, df, sf, of, _ = data
        jd = nth * CM_PERIOD + jd
        if class_name == 'Date':
            return _date_from_jd(jd)
        utc = datetime.combine(_date_from_jd(jd), time(), tzinfo=timezone.utc)
        utc += timedelta(seconds=df, microseconds=int(Fraction(sf) / 1000))
        return utc.astimezone(timezone.utc if of == 0 else timezone(timedelta(seconds=of)))

    if len(data) == 3:
        # Older layout: astronomical julian day and offset, both in days.
        ajd, of, _ = data
        local = Fraction(ajd) + Fraction(1, 2) + Fraction(of)
        jd = math.floor(local)
        if class_name == 'Date':
            return _date_from_jd(jd)
        seconds = (local - jd) * SECONDS_PER_DAY
        moment = datetime.combine(_date_from_jd(jd), time())
        moment += timedelta(microseconds=int(seconds * 1000000))
        return moment.replace(tzinfo=timezone(timedelta(seconds=int(Fraction(of) * SECONDS_PER_DAY))))

    raise SerializationError(f"Unexpected {class_name} layout with {len(data)} fields")


def _datetime_to_marshal(value: datetime) -> List[Any]:
    offset = value.utcoffset()
    if offset is None:
        raise SerializationError("Cannot marshal a naive datetime; attach a timezone")
    utc = value.astimezone(timezone.utc)
    jd = utc.toordinal() + JD_ORDINAL_OFFSET
    df = utc.hour * 3600 + utc.minute * 60 + utc.second
    sf = utc.microsecond * 1000
    return [0, jd, df, sf, int(offset.total_seconds()), ITALY]
