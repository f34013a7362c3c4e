#! /usr/bin/env python3

import argparse
import collections
import datetime
import os
import sys

import amd

options = collections.namedtuple("options", ["container_file", "extract", "verbose"])

class static():
    fmt_string = "%-30s: %s\n"
    patch_string = "  Family=0x%02X, Model=0x%02X, Stepping=0x%02X: Patch=0x%08X Length=%d bytes"

    def hex8(num):
        return "0x%08x" % num

    def tprint(string, file = None):
        print(str(datetime.datetime.now()) + ": " + string, file = file)

    def eprint(string):
        static.tprint(string, file = sys.stderr)

    # quote and escape like a debug-formatted path
    def quote(string):
        output = ""
        for c in string:
            if c in "\"\\":
                output += "\\" + c
            elif not c.isprintable():
                output += repr(c)[1 : -1]
            else:
                output += c
        return "\"" + output + "\""

def container_file(path):
    if not os.path.isfile(path):
        raise argparse.ArgumentTypeError(path + " does not exist")
    return path

def parse_args(argv = None):
    parser = argparse.ArgumentParser(prog = "amd-ucode-info", description = "Print information about an amd-ucode container")
    parser.add_argument("-e", "--extract", action = "store", dest = "extract", metavar = "EXTRACT", help = "Dump each patch in container to the specified directory")
    parser.add_argument("-v", "--verbose", action = "store_true", dest = "verbose", default = False, help = "dump the container equivalence table to stderr")
    parser.add_argument("container_file", action = "store", type = container_file)

    result = parser.parse_args(argv)

    return options(result.container_file, result.extract, result.verbose)

def run(opts):
    with open(opts.container_file, "rb") as f:
        print("Microcode patches in " + static.quote(os.path.basename(opts.container_file)) + ":")

        r = amd.reader(f)
        c = amd.container(r)

        if opts.verbose:
            sys.stderr.write(str(c))

        count = 0
        for p in c.patches():
            print(static.patch_string % (p.family, p.model, p.stepping, p.level, p.length))

            if opts.extract:
                amd.extract_patch(r, opts.extract, p.start, p.length, p.level)

            count += 1

    return count

def main(argv = None):
    opts = parse_args(argv)

    try:
        run(opts)
    except Exception as e:
        static.eprint("ERROR: " + str(e))
        return 1

    return 0

if __name__ == "__main__":
    sys.exit(main())
