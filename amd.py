#! /usr/bin/env python3

import collections
import os
import struct

import ucode_info

# https://github.com/AMDESE/amd_ucode_info
# http://lxr.free-electrons.com/source/arch/x86/include/asm/microcode_amd.h
# http://lxr.free-electrons.com/source/arch/x86/kernel/microcode_amd.c

equiv_entry = collections.namedtuple("equiv_entry", ["cpuid", "errata_mask", "errata_compare", "equiv_id"])

patch = collections.namedtuple("patch", ["family", "model", "stepping", "level", "length", "start", "equiv_id", "cpuid"])

class static():
    MAGIC = b"DMA\x00"
    EQ_TABLE_LEN_OFFSET = 8
    EQ_TABLE_OFFSET = 12
    EQ_TABLE_ENTRY_SIZE = 16
    # type tag and payload length precede the payload
    PATCH_PREHEADER_SIZE = 8
    PATCH_TYPE = 1

    fmt_string = "-- %-27s: %s\n"

    u8 = struct.Struct("<B")
    u16 = struct.Struct("<H")
    u32 = struct.Struct("<I")

    def next_record(cursor, length):
        return cursor + static.PATCH_PREHEADER_SIZE + length

    def patch_filename(level):
        return "mc_patch_%#x.bin" % level

class reader():
    def __init__(self, f):
        self.f = f

    def read_bytes(self, count):
        data = self.f.read(count)
        if len(data) != count:
            raise IOError("Unexpected end of microcode container!")
        return data

    def read_u8(self):
        return static.u8.unpack(self.read_bytes(static.u8.size))[0]

    def read_u16(self):
        return static.u16.unpack(self.read_bytes(static.u16.size))[0]

    def read_u32(self):
        return static.u32.unpack(self.read_bytes(static.u32.size))[0]

    def seek(self, offset, whence = os.SEEK_SET):
        return self.f.seek(offset, whence)

    def tell(self):
        return self.f.tell()

    def size(self):
        position = self.f.tell()
        end = self.f.seek(0, os.SEEK_END)
        self.f.seek(position)
        return end

# Used to parse processor signature (CPUID_Fn00000001_EAX)
class signature():
    def __init__(self, cpuid):
        self.cpuid = cpuid

        self.stepping = cpuid & 0xF
        cpuid = cpuid >> 4

        self.base_model = cpuid & 0xF
        cpuid = cpuid >> 4

        self.base_family = cpuid & 0xF
        cpuid = cpuid >> 4

        self.type = cpuid & 0x3
        cpuid = cpuid >> 4

        self.extended_model = cpuid & 0xF
        cpuid = cpuid >> 4

        self.extended_family = cpuid & 0xFF

        self.family = self.base_family + self.extended_family
        self.model = self.base_model + (self.extended_model << 4)

    def fms(self):
        return (self.family, self.model, self.stepping)

    def __str__(self):
        return \
        static.fmt_string % ("Stepping", ucode_info.static.hex8(self.stepping)) + \
        static.fmt_string % ("Base Model", ucode_info.static.hex8(self.base_model)) + \
        static.fmt_string % ("Base Family", ucode_info.static.hex8(self.base_family)) + \
        static.fmt_string % ("Type", ucode_info.static.hex8(self.type)) + \
        static.fmt_string % ("Extended Model", ucode_info.static.hex8(self.extended_model)) + \
        static.fmt_string % ("Extended Family", ucode_info.static.hex8(self.extended_family))

def fms(cpuid):
    return signature(cpuid).fms()

def parse_equivalent_cpu(r, table_len):
    table = dict()
    entries = []

    stop = static.EQ_TABLE_OFFSET + table_len
    for item in range(static.EQ_TABLE_OFFSET, stop, static.EQ_TABLE_ENTRY_SIZE):
        r.seek(item)

        cpuid = r.read_u32()
        errata_mask = r.read_u32()
        errata_compare = r.read_u32()
        equiv_id = r.read_u16()

        entries.append(equiv_entry(cpuid, errata_mask, errata_compare, equiv_id))

        # zero marks an unused slot, later entries win
        if equiv_id != 0:
            table[equiv_id] = cpuid

    return table, entries

class scanner():
    def __init__(self, r, equiv_cpuid, cursor):
        self.r = r
        self.equiv_cpuid = equiv_cpuid
        self.cursor = cursor
        self.end = r.size()

    def patches(self):
        while self.cursor < self.end:
            self.r.seek(self.cursor)

            patch_type = self.r.read_u32()
            if patch_type != static.PATCH_TYPE:
                ucode_info.static.eprint("Invalid patch identifier: 0x%08X" % patch_type)
                return

            length = self.r.read_u32()

            self.r.seek(4, os.SEEK_CUR)
            level = self.r.read_u32()

            self.r.seek(16, os.SEEK_CUR)
            equiv_id = self.r.read_u16()

            start = self.cursor + static.PATCH_PREHEADER_SIZE
            self.cursor = static.next_record(self.cursor, length)

            if equiv_id not in self.equiv_cpuid:
                ucode_info.static.eprint("Patch equivalence id not present in equivalence table (0x%04X)" % equiv_id)
                continue

            cpuid = self.equiv_cpuid[equiv_id]
            family, model, stepping = fms(cpuid)

            yield patch(family, model, stepping, level, length, start, equiv_id, cpuid)

class container():
    def __init__(self, r):
        self.r = r

        self.parse_header()
        self.equiv_cpuid, self.equiv_cpu = parse_equivalent_cpu(self.r, self.equiv_size)

    def parse_header(self):
        self.r.seek(0)
        self.magic = self.r.read_bytes(len(static.MAGIC))
        if self.magic != static.MAGIC:
            raise Exception("Input microcode container magic string mismatch!")

        self.r.seek(static.EQ_TABLE_LEN_OFFSET)
        self.equiv_size = self.r.read_u8()

    def patches(self):
        return scanner(self.r, self.equiv_cpuid, static.EQ_TABLE_OFFSET + self.equiv_size).patches()

    def __str__(self):
        output = \
        ucode_info.static.fmt_string % ("Container Magic", self.magic) + \
        ucode_info.static.fmt_string % ("Container Table Size", ucode_info.static.hex8(self.equiv_size)) + \
        ucode_info.static.fmt_string % ("Container Processor Signature Table", "")

        for entry in self.equiv_cpu:
            output += \
            static.fmt_string % ("Processor Signature", ucode_info.static.hex8(entry.cpuid)) + \
            static.fmt_string % ("Errata Mask", ucode_info.static.hex8(entry.errata_mask)) + \
            static.fmt_string % ("Errata Compare", ucode_info.static.hex8(entry.errata_compare)) + \
            static.fmt_string % ("Processor Revision ID", ucode_info.static.hex8(entry.equiv_id))

            if entry.equiv_id != 0:
                output += str(signature(entry.cpuid))

            output += "\n"

        return output

def extract_patch(r, extract_dir, start, length, level):
    # not recursive, parent directories must exist
    if not os.path.exists(extract_dir):
        os.mkdir(extract_dir)

    path = os.path.join(extract_dir, static.patch_filename(level))

    r.seek(start)
    data = r.read_bytes(length)

    with open(path, "wb") as f:
        f.write(data)

    print("    Patch extracted to " + path)

    return path
