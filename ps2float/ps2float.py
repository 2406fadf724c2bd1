#
# An implementation of the PlayStation 2's floating-point variant of IEEE-754 single
# precision arithmetic
#
# (c) Neil Booth 2007-2021.  All rights reserved.
#

import logging
from collections import namedtuple
from enum import IntEnum
from math import ldexp, trunc

import attr

__all__ = ('PS2Float', 'TextFormat', 'DefaultTextFormat', 'Compare',
           'PS2Error', 'ContractViolation', 'UnhandledAbnormalOperation',
           'NotDenormalized', 'UnhandledSignCombination',
           'add_sign', 'sub_sign',
           'MAX_VALUE', 'MIN_VALUE', 'POSITIVE_INFINITY_VALUE', 'NEGATIVE_INFINITY_VALUE',
           'OP_ADD', 'OP_SUBTRACT', 'OP_ADD_SIGN', 'OP_SUB_SIGN')


logger = logging.getLogger(__name__)


# Operation names
OP_ADD = 'add'
OP_SUBTRACT = 'subtract'
OP_ADD_SIGN = 'add_sign'
OP_SUB_SIGN = 'sub_sign'


# Encodings with a special meaning.  Where IEEE-754 places NaNs the PS2 has its largest
# finite magnitudes; the infinity encodings are ordinary operands except to add and sub.
MAX_VALUE = 0x7FFFFFFF
MIN_VALUE = 0xFFFFFFFF
POSITIVE_INFINITY_VALUE = 0x7F800000
NEGATIVE_INFINITY_VALUE = 0xFF800000
ABNORMAL_VALUES = frozenset((MAX_VALUE, MIN_VALUE,
                             POSITIVE_INFINITY_VALUE, NEGATIVE_INFINITY_VALUE))

WORD_MASK = 0xFFFFFFFF
MAGNITUDE_MASK = 0x7FFFFFFF
EXPONENT_MASK = 0xFF
MANTISSA_MASK = 0x7FFFFF
MANTISSA_BITS = 23
EXPONENT_BIAS = 127
IMPLICIT_BIT = 1 << MANTISSA_BITS


# Three-way result of the compare() operation.  There is no UNORDERED; every encoding
# is a number.
class Compare(IntEnum):
    LESS_THAN = 0
    EQUAL = 1
    GREATER_THAN = 2


@attr.s(slots=True, kw_only=True, cmp=False)
class TextFormat:
    '''Controls the output of conversion to strings.'''

    # Number of digits after the decimal point.
    precision = attr.ib(default=2)
    # Labels wrapped around values with a special encoding.  The negative forms are
    # the label preceded by a '-'.
    denormalized = attr.ib(default='Denormalized')
    fmax = attr.ib(default='Fmax')
    inf = attr.ib(default='Inf')

    def format_number(self, number):
        return f'{number:.{self.precision}f}'

    def label(self, value):
        '''Return the label for value, or None if it is displayed bare.'''
        if value.is_denormalized():
            return self.denormalized
        bits = value.to_bits()
        if bits == MAX_VALUE:
            return self.fmax
        if bits == MIN_VALUE:
            return '-' + self.fmax
        if bits == POSITIVE_INFINITY_VALUE:
            return self.inf
        if bits == NEGATIVE_INFINITY_VALUE:
            return '-' + self.inf
        return None

    def format(self, value):
        '''Return value formatted as text.

        The number shown is the encoding read with IEEE-754 weights, so denormals show
        their would-be magnitude and exponent 255 is treated like any other exponent.
        '''
        text = self.format_number(value.ieee_value())
        label = self.label(value)
        if label is None:
            return text
        return f'{label}({text})'


# Default format for str() and repr()
DefaultTextFormat = TextFormat()


#
# Signals
#

class PS2Error(ArithmeticError):
    '''All exceptions raised by this module subclass from this.

    The first argument is op_tuple, a tuple of the operation name and its operands.
    '''

    @property
    def op_tuple(self):
        return self.args[0]


class ContractViolation(PS2Error):
    '''Raised when the dispatch reaches a state its preconditions rule out.  This is a bug
    in the caller or in this module, never a property of the operands' values.'''


class UnhandledAbnormalOperation(ContractViolation):
    '''Raised when two abnormal operands form a pair with no hardware-defined outcome.'''


class NotDenormalized(ContractViolation):
    '''Raised when the denormal handler is given two operands that are not denormalized.'''


class UnhandledSignCombination(ContractViolation):
    '''Raised when sign resolution sees a combination of sign flags it does not cover.'''


def _op_name(is_add):
    return OP_ADD if is_add else OP_SUBTRACT


#
# Sign resolution
#

def add_sign(a, b):
    '''Return the sign of the result of adding a and b.

    Of the signed-zero sums only (-0) + (-0) is negative.'''
    if a.is_zero() and b.is_zero():
        if not a.sign or not b.sign:
            return False
        if a.sign and b.sign:
            return True
        raise UnhandledSignCombination((OP_ADD_SIGN, a, b))

    return a.sign


def sub_sign(a, b):
    '''Return the sign of the result of subtracting b from a.

    Of the signed-zero differences only (-0) - (+0) is negative.  Otherwise the sign is
    that of a, unless b is the greater in which case it is the flipped sign of b.
    '''
    if a.is_zero() and b.is_zero():
        if not a.sign or b.sign:
            return False
        if a.sign and not b.sign:
            return True
        raise UnhandledSignCombination((OP_SUB_SIGN, a, b))

    if a.compare(b) == Compare.LESS_THAN:
        return not b.sign
    return a.sign


class PS2Float(namedtuple('PS2Float', 'sign exponent mantissa')):
    '''A floating point number in the PS2's variant of IEEE-754 single precision.

       Encoding
       --------

    The layout is that of IEEE-754 single precision: a sign bit, an 8-bit exponent biased
    by 127 and a 23-bit mantissa with an implicit leading 1 when the exponent is
    non-zero.  The differences are in what the encodings mean:

       - an exponent of 0 is always zero; there are no denormals, and arithmetic never
         produces them
       - an exponent of 255 is an ordinary exponent, so the encoding IEEE-754 reserves
         for NaN with the largest payload is the largest finite value, Fmax
       - results are rounded towards zero

    Values are immutable.  Arithmetic returns new values.
    '''

    def __new__(cls, sign, exponent, mantissa):
        if not isinstance(exponent, int):
            raise TypeError('exponent must be an integer')
        if not isinstance(mantissa, int):
            raise TypeError('mantissa must be an integer')
        return super().__new__(cls, bool(sign), exponent & EXPONENT_MASK,
                               mantissa & MANTISSA_MASK)

    ##
    ## Construction and encoding
    ##

    @classmethod
    def from_bits(cls, value):
        '''Return the float encoded by the 32-bit unsigned integer value.'''
        if not isinstance(value, int):
            raise TypeError('value must be an integer')
        return cls(bool((value >> 31) & 1), (value >> MANTISSA_BITS) & EXPONENT_MASK,
                   value & MANTISSA_MASK)

    @classmethod
    def from_fields(cls, sign, exponent, mantissa):
        '''Return the float with the given sign, biased exponent and mantissa.  The mantissa
        excludes the implicit leading bit.'''
        return cls(sign, exponent, mantissa)

    @classmethod
    def max(cls):
        '''Return +Fmax, the largest finite value.'''
        return cls.from_bits(MAX_VALUE)

    @classmethod
    def min(cls):
        '''Return -Fmax, the most negative finite value.'''
        return cls.from_bits(MIN_VALUE)

    @classmethod
    def zero(cls, sign=False):
        return cls(sign, 0, 0)

    @classmethod
    def unpack(cls, raw, endianness='big'):
        '''Decode 4 bytes of the given endianness and return the float they encode.'''
        if len(raw) != 4:
            raise ValueError(f'expected 4 bytes to unpack; got {len(raw)}')
        return cls.from_bits(int.from_bytes(raw, endianness))

    def to_bits(self):
        '''Return the 32-bit unsigned integer encoding this float.'''
        return (self.sign << 31) | (self.exponent << MANTISSA_BITS) | self.mantissa

    def pack(self, endianness='big'):
        '''Packs this value to 4 bytes of the given endianness.'''
        return self.to_bits().to_bytes(4, endianness)

    ##
    ## Classification
    ##

    def is_zero(self):
        '''Return True if the value is zero regardless of sign.'''
        return not self.to_bits() & MAGNITUDE_MASK

    def is_denormalized(self):
        '''Return True if the exponent is zero.  This includes both zeroes.'''
        return self.exponent == 0

    def is_abnormal(self):
        '''Return True for +Fmax, -Fmax and the two infinity encodings.'''
        return self.to_bits() in ABNORMAL_VALUES

    def number_class(self):
        '''Return a string describing the class of the number.'''
        sign = '-' if self.sign else '+'
        if self.exponent == 0:
            return sign + ('Denormalized' if self.mantissa else 'Zero')
        if self.exponent == EXPONENT_MASK:
            if self.mantissa == MANTISSA_MASK:
                return sign + 'Fmax'
            if self.mantissa == 0:
                return sign + 'Inf'
        return sign + 'Normal'

    ##
    ## Quiet operations
    ##

    def set_sign(self, sign):
        '''Returns a copy of this number with the given sign.'''
        if self.sign is bool(sign):
            return self
        return PS2Float(sign, self.exponent, self.mantissa)

    def copy_abs(self):
        return self.set_sign(False)

    def copy_negate(self):
        return self.set_sign(not self.sign)

    def identical(self, other):
        '''Return True if both values have the same encoding.  Unlike ==, this distinguishes
        +0 from -0.'''
        return self.to_bits() == other.to_bits()

    ##
    ## Ordering
    ##

    def _signed_magnitude(self):
        '''Map the sign-magnitude encoding to a two's complement integer.  Both zeroes
        map to 0.'''
        magnitude = self.to_bits() & MAGNITUDE_MASK
        return -magnitude if self.sign else magnitude

    def compare(self, other):
        '''Return a Compare value ordering self against other.'''
        lhs = self._signed_magnitude()
        rhs = other._signed_magnitude()
        if lhs < rhs:
            return Compare.LESS_THAN
        if lhs > rhs:
            return Compare.GREATER_THAN
        return Compare.EQUAL

    ##
    ## Arithmetic
    ##

    def add(self, other):
        '''Return self + other.'''
        if self.is_denormalized() or other.is_denormalized():
            return self._solve_denormalized(other, True)

        if self.is_abnormal() and other.is_abnormal():
            return self._solve_abnormal(other, True)

        # Only like-signed operands are added
        if self.sign != other.sign:
            return self.sub(other)

        return self._add_sub(other, True)

    def sub(self, other):
        '''Return self - other.'''
        if self.is_denormalized() or other.is_denormalized():
            return self._solve_denormalized(other, False)

        if self.is_abnormal() and other.is_abnormal():
            return self._solve_abnormal(other, False)

        if self.compare(other) == Compare.EQUAL:
            return PS2Float.zero(sub_sign(self, other))

        return self._add_sub(other, False)

    def mul(self, other):
        raise NotImplementedError('PS2 multiplication is not implemented')

    def div(self, other):
        raise NotImplementedError('PS2 division is not implemented')

    def _solve_denormalized(self, other, is_add):
        '''Denormals are zeroes to the PS2, so the result is the other operand, or zero if
        both are denormal.  Only the sign needs working out.'''
        if self.is_denormalized():
            result = PS2Float.zero() if other.is_denormalized() else other
        elif other.is_denormalized():
            result = self
        else:
            raise NotDenormalized((_op_name(is_add), self, other))

        if is_add:
            return result.set_sign(add_sign(self, other))
        return result.set_sign(sub_sign(self, other))

    def _solve_abnormal(self, other, is_add):
        '''Return the hardware-defined result of adding or subtracting two abnormal values.'''
        outcomes = _abnormal_outcomes.get((self.to_bits(), other.to_bits()))
        if outcomes is None:
            raise UnhandledAbnormalOperation((_op_name(is_add), self, other))
        return PS2Float.from_bits(outcomes[0 if is_add else 1])

    def _add_sub(self, other, is_add):
        '''Add or subtract the magnitudes of two normal values.

        The operand with the smaller exponent has its mantissa shifted right to align with
        the other; bits shifted out are lost.  The combined mantissa is then renormalized,
        saturating to +-Fmax on exponent overflow and flushing to zero on underflow.
        '''
        lhs = self.mantissa | IMPLICIT_BIT
        rhs = other.mantissa | IMPLICIT_BIT
        # The shift count wraps at the word width
        shift = abs(self.exponent - other.exponent) & 31

        if self.exponent >= other.exponent:
            rhs >>= shift
            exponent = self.exponent
        else:
            lhs >>= shift
            exponent = other.exponent

        if is_add:
            significand = (lhs + rhs) & WORD_MASK
            sign = self.sign
        else:
            significand = (lhs - rhs) & WORD_MASK
            sign = sub_sign(self, other)

        if significand:
            msb = significand.bit_length() - 1
            while msb > MANTISSA_BITS:
                significand >>= 1
                exponent += 1
                if exponent > EXPONENT_MASK:
                    logger.debug('%s(%r, %r) saturates', _op_name(is_add), self, other)
                    return PS2Float.min() if sign else PS2Float.max()
                msb -= 1
            while msb < MANTISSA_BITS:
                significand = (significand << 1) & WORD_MASK
                exponent -= 1
                # An exponent of zero would encode a denormal
                if exponent <= 0:
                    logger.debug('%s(%r, %r) flushes to zero', _op_name(is_add), self, other)
                    return PS2Float.zero(sign)
                msb += 1

        return PS2Float(sign, exponent, significand & MANTISSA_MASK)._round_towards_zero()

    def _round_towards_zero(self):
        '''Return the value with any fractional part discarded.  The encoding is read as an
        integer into a host double, truncated and read back.'''
        return PS2Float.from_bits(int(trunc(float(self.to_bits()))))

    ##
    ## Conversion to other types
    ##

    def ieee_value(self):
        '''Return the encoding read with IEEE-754 normal-number weights as a host float.'''
        result = ldexp(1 + self.mantissa / IMPLICIT_BIT, self.exponent - EXPONENT_BIAS)
        return -result if self.sign else result

    def __float__(self):
        '''The value as the PS2 understands it: denormals are zero and exponent 255 is
        finite.'''
        if self.is_denormalized():
            return -0.0 if self.sign else 0.0
        return self.ieee_value()

    def to_string(self, text_format=None):
        '''Return the canonical text for this value.  See TextFormat for output control.'''
        return (text_format or DefaultTextFormat).format(self)

    def __repr__(self):
        return self.to_string()

    def __str__(self):
        return self.to_string()

    ##
    ## Python operators
    ##

    def __neg__(self):
        return self.copy_negate()

    def __pos__(self):
        return self

    def __abs__(self):
        return self.copy_abs()

    def __bool__(self):
        return not self.is_denormalized()

    def __eq__(self, other):
        if not isinstance(other, PS2Float):
            return NotImplemented
        return self.compare(other) == Compare.EQUAL

    def __ne__(self, other):
        if not isinstance(other, PS2Float):
            return NotImplemented
        return self.compare(other) != Compare.EQUAL

    def __lt__(self, other):
        if not isinstance(other, PS2Float):
            return NotImplemented
        return self.compare(other) == Compare.LESS_THAN

    def __le__(self, other):
        if not isinstance(other, PS2Float):
            return NotImplemented
        return self.compare(other) != Compare.GREATER_THAN

    def __gt__(self, other):
        if not isinstance(other, PS2Float):
            return NotImplemented
        return self.compare(other) == Compare.GREATER_THAN

    def __ge__(self, other):
        if not isinstance(other, PS2Float):
            return NotImplemented
        return self.compare(other) != Compare.LESS_THAN

    def __hash__(self):
        '''Must hash equally for values that compare equal, so the zeroes hash the same.'''
        return hash(self._signed_magnitude())

    def __add__(self, other):
        if not isinstance(other, PS2Float):
            return NotImplemented
        return self.add(other)

    def __sub__(self, other):
        if not isinstance(other, PS2Float):
            return NotImplemented
        return self.sub(other)

    def __mul__(self, other):
        if not isinstance(other, PS2Float):
            return NotImplemented
        return self.mul(other)

    def __truediv__(self, other):
        if not isinstance(other, PS2Float):
            return NotImplemented
        return self.div(other)


# Results of adding and subtracting two abnormal values, keyed by the operand encodings.
# Each entry is (add result, subtract result).
_abnormal_outcomes = {
    (MAX_VALUE, MAX_VALUE): (MAX_VALUE, 0),
    (MIN_VALUE, MIN_VALUE): (MIN_VALUE, 0),
    (MIN_VALUE, MAX_VALUE): (MAX_VALUE, MIN_VALUE),
    (MAX_VALUE, MIN_VALUE): (0, MAX_VALUE),
    (POSITIVE_INFINITY_VALUE, POSITIVE_INFINITY_VALUE): (MAX_VALUE, 0),
    (NEGATIVE_INFINITY_VALUE, POSITIVE_INFINITY_VALUE): (0, MIN_VALUE),
    (NEGATIVE_INFINITY_VALUE, NEGATIVE_INFINITY_VALUE): (MIN_VALUE, 0),
}
