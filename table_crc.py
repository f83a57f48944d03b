#!/usr/bin/env python3
# SPDX-License-Identifier: MIT-0
# SPDX-FileCopyrightText:  2023 Istvan Pasztor
"""
Table-driven CRC-32, CRC-16 and CRC-7 calculator in Python

Execute this script as a command to calculate CRCs or to run the self-test.
Use this as a module to access the predefined CRC variants (through the
CRC_CATALOGUE list, the variant() function and the CrcTableCache class).

Every variant is processed one byte at a time with a 256-entry lookup table.
The 32-bit and 16-bit variants use a reflected (LSB-first) CRC register, the
7-bit variant uses an unreflected (MSB-first) register. The CRC-7 register is
only 7 bits wide so it is kept in the most significant bits of an 8-bit
working register and it is shifted back into place once, after the last byte.
"""
import threading
from typing import NamedTuple


def reverse_bits(value: int, width: int):
    assert 0 <= value < (1 << width)
    return int('{v:0{w}b}'.format(v=value, w=width)[::-1], 2)


class CrcVariant(NamedTuple):
    """ The parameters of a CRC algorithm in the format used by the RevEng CRC
    catalogue: https://reveng.sourceforge.io/crc-catalogue/all.htm
    The poly and init values are listed as they appear in the catalogue
    (unreflected), the register-domain values are derived from them. """
    name: str
    width: int
    poly: int
    reflected: bool
    init: int
    xorout: int
    check: int
    alias: tuple = ()

    @property
    def reg_width(self) -> int:
        # at least 8 bits to make it easy to process whole bytes
        return max(self.width, 8)

    @property
    def shift(self) -> int:
        return 0 if self.reflected else self.reg_width - self.width

    @property
    def mask(self) -> int:
        return (1 << self.width) - 1

    @property
    def reg_poly(self) -> int:
        if self.reflected:
            return reverse_bits(self.poly, self.width)
        return self.poly << self.shift

    @property
    def reg_init(self) -> int:
        if self.reflected:
            return reverse_bits(self.init, self.width)
        return self.init << self.shift

    @property
    def output_width(self) -> int:
        return self.width


class CrcTable(NamedTuple):
    """ A lookup table bound to the variant it was built for. """
    variant: CrcVariant
    entries: tuple


def build_table(v: CrcVariant) -> tuple:
    """ Entry i is the remainder left in the CRC register after shifting the
    8 bits of byte value i through an initially zeroed register. """
    reg_mask = (1 << v.reg_width) - 1
    top_bit = 1 << (v.reg_width - 1)
    poly = v.reg_poly
    table = []
    for i in range(256):
        if v.reflected:
            crc = i
            for _ in range(8):
                crc = (crc >> 1) ^ poly if crc & 1 else crc >> 1
        else:
            crc = i << (v.reg_width - 8)
            for _ in range(8):
                crc = ((crc << 1) & reg_mask) ^ poly if crc & top_bit else (crc << 1) & reg_mask
        table.append(crc)
    return tuple(table)


def compute(crc_table: CrcTable, data: bytes) -> int:
    """ Folds data through the table and returns the final CRC. The result
    depends only on the variant and on the exact sequence of bytes. """
    v, table = crc_table
    crc = v.reg_init
    if v.reflected:
        for b in data:
            crc = table[(crc ^ b) & 0xff] ^ (crc >> 8)
    else:
        reg_mask = (1 << v.reg_width) - 1
        top = v.reg_width - 8
        for b in data:
            crc = table[((crc >> top) ^ b) & 0xff] ^ ((crc << 8) & reg_mask)
        crc >>= v.shift  # moving the CRC from the MSBs of the register
    return (crc ^ v.xorout) & v.mask


_CRC_CATALOGUE_FILE = '''
# The lines in this file follow the format used in the online CRC catalogue of
# the CRC RevEng tool: https://reveng.sourceforge.io/crc-catalogue/all.htm
# refin and refout are always equal for the supported variants so a single
# "reflected" field replaces them.
#
# CRC-32 = x32 + x26 + x23 + x22 + x16 + x12 + x11 + x10 + x8 + x7 + x5 + x4 + x2 + x + 1
# CRC-16 = x16 + x15 + x2 + 1
# CRC-7  = x7 + x3 + 1

width=32 poly=0x04c11db7 init=0xffffffff reflected=true xorout=0xffffffff check=0xcbf43926 name="CRC-32" alias="CRC-32/ISO-HDLC,PKZIP"
width=16 poly=0x8005 init=0x0000 reflected=true xorout=0x0000 check=0xbb3d name="CRC-16" alias="CRC-16/ARC,ARC"
width=7 poly=0x09 init=0x00 reflected=false xorout=0x00 check=0x75 name="CRC-7" alias="CRC-7/MMC"
'''


def _parse_crc_params(line: str) -> CrcVariant:
    m = {kv[0]: kv[1] for kv in (field.split('=', 1) for field in line.split())}
    if 'width' not in m or 'poly' not in m:
        raise ValueError('the required "width" or "poly" field is missing')
    invalid = set(m.keys()) - {'width', 'poly', 'init', 'reflected',
                               'xorout', 'check', 'name', 'alias'}
    if invalid:
        raise ValueError('invalid parameters: ' + ', '.join(sorted(invalid)))
    def unquote(s):
        return s[1:-1] if s.startswith('"') and s.endswith('"') else s
    def to_bool(s):
        if s.lower() not in ('true', 'false'):
            raise ValueError('invalid bool value: %r' % s)
        return s.lower() == 'true'
    v = CrcVariant(
        name=unquote(m.get('name', 'CUSTOM')),
        width=int(m['width'], 0),
        poly=int(m['poly'], 0),
        reflected=to_bool(m.get('reflected', 'false')),
        init=int(m.get('init', '0'), 0),
        xorout=int(m.get('xorout', '0'), 0),
        check=int(m.get('check', '0'), 0),
        alias=tuple(s for s in unquote(m.get('alias', '')).split(',') if s),
    )
    _validate_variant(v)
    return v


def _validate_variant(v: CrcVariant):
    if v.width < 1:
        raise ValueError('%s: invalid width: %r' % (v.name, v.width))
    for field in ('poly', 'init', 'xorout', 'check'):
        if not 0 <= getattr(v, field) <= v.mask:
            raise ValueError('%s: %s does not fit in %s bits' % (v.name, field, v.width))
    # The register has to hold every byte value shifted in by the table
    # builder, an MSB-aligned register narrower than 8 bits would drop them.
    if v.reg_width < 8 or v.reg_width < v.width or v.reg_poly >> v.reg_width:
        raise ValueError('%s: invalid working register width: %r' % (v.name, v.reg_width))


def _parse_crc_catalogue(crc_catalogue_file_contents) -> [CrcVariant]:
    lines = (x.strip() for x in crc_catalogue_file_contents.splitlines())
    return [_parse_crc_params(x) for x in lines if x and not x.startswith('#')]


CRC_CATALOGUE = _parse_crc_catalogue(_CRC_CATALOGUE_FILE)
CRC_PARAMS = {v.name.upper(): v for v in CRC_CATALOGUE}
for _v in CRC_CATALOGUE:
    for _alias in _v.alias:
        CRC_PARAMS[_alias.upper()] = _v


def variant(name: str) -> CrcVariant:
    v = CRC_PARAMS.get(name.strip().upper())
    if v is None:
        raise ValueError('invalid CRC algorithm name: %r' % name)
    return v


class CrcTableCache:
    """ Builds the lookup table of each variant once and keeps it for the
    lifetime of the cache. Safe to share between threads: the first user of a
    variant builds its table under a lock, everybody else reuses it. """

    def __init__(self):
        self._lock = threading.Lock()
        self._tables = {}

    def is_ready(self, name: str) -> bool:
        return variant(name).name in self._tables

    def ensure_table_ready(self, name: str) -> CrcTable:
        v = variant(name)
        t = self._tables.get(v.name)
        if t is None:
            with self._lock:
                t = self._tables.get(v.name)
                if t is None:
                    t = CrcTable(v, build_table(v))
                    self._tables[v.name] = t
        return t

    def build_all(self):
        for v in CRC_CATALOGUE:
            self.ensure_table_ready(v.name)

    def checksum(self, name: str, data: bytes) -> int:
        # A missing table is built on demand, there is no "not ready" state
        # visible to the caller.
        return compute(self.ensure_table_ready(name), data)


_default_cache = CrcTableCache()


def ensure_table_ready(name: str) -> CrcTable:
    return _default_cache.ensure_table_ready(name)


def checksum(name: str, data: bytes) -> int:
    return _default_cache.checksum(name, data)


def crc32(data: bytes) -> int:
    return _default_cache.checksum('CRC-32', data)


def crc16(data: bytes) -> int:
    return _default_cache.checksum('CRC-16', data)


def crc7(data: bytes) -> int:
    return _default_cache.checksum('CRC-7', data)


def crc7_per_byte_shift(data: bytes) -> int:
    """ A broken CRC-7 fold that realigns the register after every byte
    instead of once at the end. It returns 0x65 for b'123456789' instead of
    the reference 0x75. Only the self-test uses it, as a negative example. """
    _, table = ensure_table_ready('CRC-7')
    crc = 0
    for b in data:
        crc = table[crc ^ b] >> 1
    return crc


def _test_crc(v: CrcVariant) -> bool:
    crc_table = ensure_table_ready(v.name)
    print('{:10s} width={!r} poly=0x{:0{w}x} init=0x{:0{w}x} reflected={!r} '
          'xorout=0x{:0{w}x}'.format(v.name, v.width, v.poly, v.init,
          v.reflected, v.xorout, w=(v.width+3)//4))

    crc_1 = compute(crc_table, b'123456789')
    crc_2 = compute(CrcTable(v, build_table(v)), b'123456789')

    print('{:10s} expected:    check={:0{w}x}\n'
          '{:10s} test_output: check={:0{w}x}'.format
          ('', v.check, '', crc_1, w=(v.width+3)//4))
    if v.alias:
        print('{:10s} aliases:     {}'.format('', ', '.join(v.alias)))

    if crc_table.entries[0] != 0 or len(crc_table.entries) != 256:
        print('Invalid lookup table.')
        return False
    if crc_1 != crc_2:
        print('Rebuilding the lookup table changed the CRC.')
        return False
    if crc_1 != v.check:
        print('CRC doesn\'t match the reference "check" value.')
        return False
    if compute(crc_table, b'') != (v.init ^ v.xorout) & v.mask:
        print('The CRC of the empty input isn\'t init^xorout.')
        return False
    return True


def _test_and_list_catalogue_entries(crc_catalogue):
    passed, failed = [], []
    for v in crc_catalogue:
        if _test_crc(v):
            passed.append(v.name)
        else:
            failed.append(v.name)
    if crc7_per_byte_shift(b'123456789') == variant('CRC-7').check:
        print('The per-byte shift CRC-7 fold matches the reference value.')
        failed.append('CRC-7 (per-byte shift)')
    if failed:
        print('Failed CRCs: ' + ', '.join(failed))
    print('Number of failed CRC algorithms: %s' % len(failed))
    print('Number of CRC algorithms that passed the test: %s' % len(passed))
    return not failed


def _print_table(v: CrcVariant):
    entries = ensure_table_ready(v.name).entries
    w = (v.reg_width + 3) // 4
    c_type = 'uint{}_t'.format(8 if w <= 2 else 16 if w <= 4 else 32)
    print('static const {} {}_table[256] = {{'.format(
          c_type, v.name.lower().replace('-', '').replace('/', '_')))
    for i in range(0, 256, 8):
        print('    ' + ', '.join('0x{:0{w}X}'.format(x, w=w) for x in entries[i:i+8]) + ',')
    print('};')


def _read_input(args) -> bytes:
    if args.string is not None:
        return args.string.encode('utf-8')
    import sys
    # we want to read binary data not strings
    infile = sys.stdin.buffer if args.infile is None else args.infile
    MAX_CHUNK_SIZE = 128 * 1024
    chunks = []
    while 1:
        chunk = infile.read(MAX_CHUNK_SIZE)
        if not chunk:
            break
        chunks.append(chunk)
    return b''.join(chunks)


def _calc_crc(args):
    names = [v.name for v in CRC_CATALOGUE] if args.all else [args.crc]
    selected = [variant(name) for name in names]
    data = _read_input(args)

    if args.format == '0xhex':
        fmt_str = '0x{:0{w}x}'
    elif args.format == 'hex':
        fmt_str = '{:0{w}x}'
    else:
        fmt_str = '{!r}'

    if not args.quiet:
        print('number of bytes processed: %s' % len(data))
    for v in selected:
        crc = checksum(v.name, data)
        line = fmt_str.format(crc, w=(v.width+3)//4)
        print(line if args.quiet else '{}: {}'.format(v.name, line))


def _main(argv=None):
    import argparse
    import sys
    p = argparse.ArgumentParser(description='Table-driven CRC-32/CRC-16/CRC-7 calculator.')
    p.add_argument('-l', '--list', action='store_true', help=
                   'list and test all builtin CRC algorithms')
    p.add_argument('-c', '--crc', help='the name of the CRC algorithm: ' +
                   ', '.join(v.name for v in CRC_CATALOGUE))
    p.add_argument('-a', '--all', action='store_true', help=
                   'calculate every builtin CRC of the input')
    p.add_argument('-t', '--table', action='store_true', help=
                   'print the lookup table of the CRC algorithm as a C array')
    p.add_argument('-s', '--string', help='calculate the CRC of this string '
                   '(UTF-8 encoded) instead of reading the input file')
    p.add_argument('-f', '--format', choices=['0xhex', 'hex', 'decimal'],
                   default='0xhex', help='output format of the crc')
    p.add_argument('-q', '--quiet', action='store_true', help=
                   'output only the result of the calculation')
    p.add_argument('infile', nargs='?', type=argparse.FileType('rb'), help=
                   'name of the input file, default: stdin', default=None)
    args = p.parse_args(argv)

    if args.crc:
        try:
            variant(args.crc)
        except ValueError as ex:
            p.error(str(ex))

    if args.list:
        sys.exit(0 if _test_and_list_catalogue_entries(CRC_CATALOGUE) else 1)

    if args.table:
        if not args.crc:
            p.error('--table requires --crc')
        _print_table(variant(args.crc))
        sys.exit(0)

    if args.crc or args.all:
        try:
            _calc_crc(args)
            sys.exit(0)
        finally:
            if args.infile is not None:
                args.infile.close()

    p.print_help()
    sys.exit(2)


if __name__ == '__main__':
    _main()
