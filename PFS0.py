import collections
import os
import pak
from pathlib import Path

MAGIC       = b"PFS0"
HEADER_SIZE = 0x10
RECORD_SIZE = 0x18
CHUNK_SIZE  = 0x800
READ_LIMIT  = CHUNK_SIZE * 512

class PFS0Error(Exception):
    pass

class IoError(PFS0Error):
    def __init__(self, message, cause=None):
        self.cause = cause

        super().__init__(message)

class FormatError(PFS0Error):
    pass

class NotFoundError(PFS0Error, LookupError):
    def __init__(self, key):
        self.key = key

        super().__init__(f"No entry matches {key!r}")

class EntryIndexError(PFS0Error, IndexError):
    def __init__(self, index, count):
        self.index = index
        self.count = count

        super().__init__(f"Entry index {index} out of range for {count} entries")

class Magic(pak.Type):
    @classmethod
    def _unpack(cls, buf, *, ctx):
        return bytes(buf.read(len(MAGIC)))

    @classmethod
    def _pack(cls, value, *, ctx):
        return bytes(value)

    @classmethod
    def _default(cls, *, ctx):
        return MAGIC

class Header(pak.Packet):
    magic:               Magic
    entry_count:         pak.UInt16

    # The format stores both counts as 32 bits, only the low halves are read.
    entry_count_high:    pak.UInt16
    string_table_length: pak.UInt16
    string_table_high:   pak.UInt16

    reserved: pak.UInt32

class FileRecord(pak.Packet):
    data_offset: pak.UInt64
    data_size:   pak.UInt64
    name_offset: pak.UInt32

    reserved: pak.UInt32

class Chunk(collections.namedtuple("Chunk", ("offset", "size", "content", "remaining", "error"))):
    """One slice of an entry produced by an :class:`EntryStream`.

    ``size`` is the declared length of the slice. ``content`` only falls
    short of it when ``error`` is set.
    """

    __slots__ = ()

    @property
    def ok(self):
        return self.error is None

def read_exact(f, size, parts=None):
    """Read ``size`` bytes, stopping early only at EOF.

    Bytes read before an ``OSError`` remain in ``parts`` when it is given.
    """

    if parts is None:
        parts = []

    while size > 0:
        data = f.read(min(size, READ_LIMIT))
        if not data:
            break

        parts.append(data)
        size -= len(data)

    return b"".join(parts)

class EntryStream:
    """Forward-only reader over one entry, yielding :class:`Chunk` objects.

    The stream owns its file handle. The handle is closed once the last
    chunk has been read, when an error chunk is produced, on :meth:`close`,
    on leaving a ``with`` block and when the stream is collected.
    """

    def __init__(self, f, entry, chunk_size=CHUNK_SIZE):
        self.f          = f
        self.entry      = entry
        self.chunk_size = chunk_size
        self.position   = 0

    @property
    def closed(self):
        return self.f.closed

    def __iter__(self):
        return self

    def __next__(self):
        if self.f.closed or self.position >= self.entry.size:
            self.close()

            raise StopIteration

        size  = min(self.chunk_size, self.entry.size - self.position)
        error = None

        parts = []
        try:
            content = read_exact(self.f, size, parts)
        except OSError as e:
            content = b"".join(parts)
            error   = IoError(f"Failed reading {self.entry.name!r} at offset {self.position}: {e}", e)
        else:
            if len(content) < size:
                error = IoError(
                    f"Entry {self.entry.name!r} is truncated: "
                    f"expected {size} bytes at offset {self.position}, got {len(content)}"
                )

        chunk = Chunk(
            offset    = self.position,
            size      = size,
            content   = content,
            remaining = self.entry.size - self.position - size,
            error     = error,
        )

        self.position += size
        if error is not None or self.position >= self.entry.size:
            self.close()

        return chunk

    def close(self):
        self.f.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def __del__(self):
        f = getattr(self, "f", None)
        if f is not None:
            f.close()

class PFS0:
    class FileEntry(collections.namedtuple("FileEntry", ("start_offset", "size", "name"))):
        __slots__ = ()

    def __init__(self, path):
        self.path     = Path(path)
        self.basename = self.path.name.split(".")[0]

        self.total_size          = None
        self.header_length       = None
        self.string_table_length = None
        self.entries             = ()

    def __repr__(self):
        return f"{type(self).__name__}({str(self.path)!r})"

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def open(self):
        try:
            return self.path.open("rb")
        except OSError as e:
            raise IoError(f"Unable to open {self.path}: {e}", e) from e

    def load_metadata(self):
        """Decode the header, file table and string table of the container.

        The decoded state is only replaced once everything has been read, so
        a failed load leaves the previous state in place.
        """

        with self.open() as f:
            try:
                total_size = os.fstat(f.fileno()).st_size

                header_data = read_exact(f, HEADER_SIZE)
                if header_data[:len(MAGIC)] != MAGIC:
                    raise FormatError(f"Invalid PFS0 header. Expected {MAGIC!r}, got {header_data[:len(MAGIC)]!r}")

                if len(header_data) < HEADER_SIZE:
                    raise FormatError(f"Truncated PFS0 header: {len(header_data)} of {HEADER_SIZE} bytes")

                header = Header.unpack(header_data)

                header_length = HEADER_SIZE + RECORD_SIZE * header.entry_count

                f.seek(header_length)
                string_table = read_exact(f, header.string_table_length)
                if len(string_table) < header.string_table_length:
                    raise FormatError(
                        f"Truncated string table: {len(string_table)} of {header.string_table_length} bytes"
                    )

                entries = []
                for i in range(header.entry_count):
                    f.seek(HEADER_SIZE + RECORD_SIZE * i)

                    record_data = read_exact(f, RECORD_SIZE)
                    if len(record_data) < RECORD_SIZE:
                        raise FormatError(f"Truncated file record {i}: {len(record_data)} of {RECORD_SIZE} bytes")

                    record = FileRecord.unpack(record_data)

                    entries.append(self.FileEntry(
                        start_offset = record.data_offset,
                        size         = record.data_size,
                        name         = self.decode_name(string_table, record.name_offset, i),
                    ))

            except OSError as e:
                raise IoError(f"Failed reading metadata from {self.path}: {e}", e) from e

        self.total_size          = total_size
        self.header_length       = header_length
        self.string_table_length = header.string_table_length
        self.entries             = tuple(entries)

    @staticmethod
    def decode_name(string_table, offset, index):
        if offset > len(string_table):
            raise FormatError(
                f"Name offset {offset:#x} of entry {index} is outside the {len(string_table)} byte string table"
            )

        end = string_table.find(b"\0", offset)
        if end < 0:
            end = len(string_table)

        try:
            return string_table[offset:end].decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError(f"Name of entry {index} is not valid UTF-8: {string_table[offset:end]!r}") from e

    def entry(self, index):
        if not 0 <= index < len(self.entries):
            raise EntryIndexError(index, len(self.entries))

        return self.entries[index]

    def entry_offset(self, index):
        """Absolute offset of an entry's data within the file."""

        return self.header_length + self.entry(index).start_offset

    def find_entry_by_suffix(self, suffix):
        if not suffix:
            raise ValueError("Suffix must not be empty")

        encoded_suffix = suffix.encode("utf-8")
        for i, entry in enumerate(self.entries):
            if entry.name.encode("utf-8").endswith(encoded_suffix):
                return i

        raise NotFoundError(suffix)

    def find_entry_by_name(self, name):
        for i, entry in enumerate(self.entries):
            if entry.name == name:
                return i

        raise NotFoundError(name)

    def validate(self):
        for i, entry in enumerate(self.entries):
            end = self.header_length + entry.start_offset + entry.size
            if end > self.total_size:
                raise FormatError(
                    f"Entry {i} ({entry.name!r}) ends at {end:#x}, past the end of the {self.total_size:#x} byte file"
                )

    def seek_entry(self, f, entry, offset):
        try:
            file_size = os.fstat(f.fileno()).st_size
            if offset + entry.size > file_size:
                raise IoError(
                    f"Entry {entry.name!r} is truncated: "
                    f"it ends at {offset + entry.size:#x}, past the end of the {file_size:#x} byte file"
                )

            f.seek(offset)
        except OSError as e:
            raise IoError(f"Unable to seek to {entry.name!r} in {self.path}: {e}", e) from e

    def read_entry_fully(self, index):
        entry  = self.entry(index)
        offset = self.entry_offset(index)

        with self.open() as f:
            self.seek_entry(f, entry, offset)

            try:
                data = read_exact(f, entry.size)
            except OSError as e:
                raise IoError(f"Failed reading {entry.name!r} from {self.path}: {e}", e) from e

        if len(data) < entry.size:
            raise IoError(f"Entry {entry.name!r} is truncated: expected {entry.size} bytes, got {len(data)}")

        return data

    def read_ticket(self):
        return self.read_entry_fully(self.find_entry_by_suffix("tik"))

    def open_entry_stream(self, index, chunk_size=CHUNK_SIZE):
        entry  = self.entry(index)
        offset = self.entry_offset(index)

        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")

        f = self.open()
        try:
            self.seek_entry(f, entry, offset)
        except BaseException:
            f.close()

            raise

        return EntryStream(f, entry, chunk_size)

    def read_chunks(self, index, chunk_size=CHUNK_SIZE):
        with self.open_entry_stream(index, chunk_size) as stream:
            for chunk in stream:
                if chunk.error is not None:
                    raise chunk.error

                yield chunk.content

    def copy_entry(self, index, dest, chunk_size=CHUNK_SIZE):
        written = 0
        for data in self.read_chunks(index, chunk_size):
            dest.write(data)
            written += len(data)

        return written
