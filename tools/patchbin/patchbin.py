#!/usr/bin/env python
# Relocate the vector table in a raw firmware image (e.g. Zephyr's zephyr.bin)
# so it can be wrapped by MCUBoot's imgtool and packaged for DFU.
#
# The default variant copies offset 0x200..0x2d7 to offset 0x0..0xd7:
#     patch-bin zephyr.bin zephyr-patched.bin zephyr-vector.bin
# The vector table is written to zephyr-vector.bin.
#
# Then, to create and package the MCUBoot image:
#     imgtool.py create --pad-header --align 4 --version 1.0.0 --header-size 32 \
#         --slot-size 475136 zephyr-patched.bin zephyr-img.bin
#     adafruit-nrfutil dfu genpkg --dev-type 0x0052 --application zephyr-img.bin zephyr-dfu.zip
# Flash zephyr-vector.bin at address 0x0 and zephyr-img.bin at address 0x8000.
#
# Output files are written in place, not atomically. If a write fails partway,
# whatever was already written stays on disk.
# Written for Python 3
import argparse
import collections
import os.path
import sys


MAX_SIZE = 512 * 1024
VECTOR_TABLE_SIZE = 0xd8
SOURCE_OFFSET = 0x200


class PatchError(Exception):
    def __init__(self, msg, path=None):
        self.msg = msg
        self.path = path

    def __str__(self):
        if self.path is not None:
            return "{0}: {1}".format(self.path, self.msg)
        else:
            return self.msg


class SourceUnreadable(PatchError):
    pass


class ReadFailed(PatchError):
    pass


class ImageTooLarge(PatchError):
    pass


class OutOfBounds(PatchError):
    pass


class WriteFailed(PatchError):
    pass


class PatchDescriptor(collections.namedtuple('PatchDescriptor', 'source_offset dest_offset length')):
    __slots__ = ()

    def __new__(cls, source_offset, dest_offset, length):
        if source_offset < 0 or dest_offset < 0:
            raise ValueError("Offsets must not be negative")
        if length <= 0:
            raise ValueError("Length must be positive")
        return super().__new__(cls, source_offset, dest_offset, length)


VARIANTS = {
    'zephyr': PatchDescriptor(SOURCE_OFFSET, 0x0, VECTOR_TABLE_SIZE),
    # Leaves room for a 32-byte bootloader header in front of the table
    'header': PatchDescriptor(SOURCE_OFFSET, 0x20, VECTOR_TABLE_SIZE),
}

DEFAULT_VARIANT = 'zephyr'


PatchReport = collections.namedtuple('PatchReport', 'source_path dest_path vector_path read_length')


class ImageBuffer(object):
    """A fixed-capacity byte buffer holding one firmware image.

    The capacity is chosen when the buffer is created. The occupied length is
    set once by load() and is never more than the capacity.
    """

    def __init__(self, capacity=MAX_SIZE):
        if capacity <= 0:
            raise ValueError("Capacity must be positive")
        self.capacity = capacity
        self.data = bytearray(capacity)
        self.length = None

    def load(self, infile):
        """Fill the buffer from a binary file object until EOF or capacity.

        Returns the number of bytes read.
        """
        if self.length is not None:
            raise RuntimeError("Image has already been loaded")
        view = memoryview(self.data)
        length = 0
        while length < self.capacity:
            count = infile.readinto(view[length:])
            if not count:
                break
            length += count
        self.length = length
        return length

    def check_bounds(self, descriptor):
        if self.length is None:
            raise RuntimeError("Image has not been loaded")
        for name, offset in (('source', descriptor.source_offset), ('destination', descriptor.dest_offset)):
            if offset + descriptor.length > self.length:
                raise OutOfBounds(
                    "{0} range 0x{1:x}..0x{2:x} is past the end of the image ({3} bytes)".format(
                        name, offset, offset + descriptor.length - 1, self.length))

    def copy_range(self, descriptor):
        self.check_bounds(descriptor)
        src = descriptor.source_offset
        dest = descriptor.dest_offset
        # The right-hand slice is a copy, so overlapping ranges are safe
        self.data[dest:dest+descriptor.length] = self.data[src:src+descriptor.length]

    def view(self):
        return memoryview(self.data)[:self.length]

    def window(self, offset, length):
        return self.view()[offset:offset+length]


def read_image(path, capacity=MAX_SIZE):
    image = ImageBuffer(capacity)
    try:
        infile = open(path, 'rb')
    except OSError as e:
        raise SourceUnreadable("Cannot open for reading: {0}".format(e.strerror or e), path) from e

    with infile:
        try:
            image.load(infile)
            overflow = infile.read(1)
        except OSError as e:
            raise ReadFailed("Error while reading: {0}".format(e.strerror or e), path) from e

    if overflow:
        raise ImageTooLarge("Image is larger than the maximum of {0} bytes".format(capacity), path)
    return image


def write_file(path, data):
    try:
        with open(path, 'wb') as outfile:
            written = outfile.write(data)
    except OSError as e:
        raise WriteFailed("Error while writing: {0}".format(e.strerror or e), path) from e

    if written != len(data):
        raise WriteFailed("Wrote only {0} of {1} bytes".format(written, len(data)), path)


def patch(source_path, dest_path, vector_path=None, descriptor=VARIANTS[DEFAULT_VARIANT], max_size=MAX_SIZE):
    """Copy the descriptor's window within the image at source_path.

    The patched image goes to dest_path, the same size as the source. If
    vector_path is given, the relocated window alone (descriptor.length bytes
    taken from descriptor.dest_offset) is written there too.
    """
    image = read_image(source_path, max_size)

    try:
        image.copy_range(descriptor)
    except OutOfBounds as e:
        e.path = source_path
        raise

    write_file(dest_path, image.view())
    if vector_path is not None:
        write_file(vector_path, image.window(descriptor.dest_offset, descriptor.length))

    return PatchReport(source_path, dest_path, vector_path, image.length)


def main(argv=None):
    myname = os.path.basename(sys.argv[0])
    if argv is None:
        argv = sys.argv[1:]

    args = get_args(argv)

    if len(args.paths) not in (2, 3):
        print("Usage: {0} zephyr.bin zephyr-patched.bin [zephyr-vector.bin]".format(myname))
        return 1

    src, dest = args.paths[:2]
    vector = args.paths[2] if len(args.paths) == 3 else None

    print("Patching {0} to {1}...".format(src, dest))
    try:
        report = patch(src, dest, vector, VARIANTS[args.variant], args.max_size)
    except PatchError as e:
        print(e, file=sys.stderr)
        return 1

    print("*** Done! Patched {0} bytes from {1} to {2}".format(report.read_length, report.source_path, report.dest_path))
    if report.vector_path is not None:
        print("Vector table written to {0}".format(report.vector_path))
    return 0


def parse_int(value):
    try:
        number = int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError("invalid number: {0}".format(value))
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive: {0}".format(value))
    return number


def get_args(argv):
    parser = argparse.ArgumentParser(
        description="Copy a firmware image's vector table to its boot location "
                    "and optionally write the table to its own file.",
        epilog="Numbers are in decimal unless prefixed with 0x (hex), 0b "
               "(binary), or 0o (octal)."
    )
    parser.add_argument(
        'paths',
        nargs='*',
        metavar='path',
        help="source image, patched output image and optional vector table output")
    parser.add_argument(
        '--variant',
        choices=sorted(VARIANTS),
        default=DEFAULT_VARIANT,
        help="where to copy the vector table. Default {0}".format(DEFAULT_VARIANT))
    parser.add_argument(
        '--max-size',
        type=parse_int,
        default=MAX_SIZE,
        help="largest accepted image in bytes. Default 0x{0:x}".format(MAX_SIZE))
    return parser.parse_args(argv)


if __name__ == '__main__':
    sys.exit(main())
