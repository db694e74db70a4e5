#!/usr/bin/env python3
"""Quick demo: list files in a remote ZIP and read one member."""
import argparse
import binascii
import logging
import time
from zipfile import ZipFile

from http_range_stream import DEFAULT_BUFFER_SIZE, RangeStream


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--url", required=True)
    ap.add_argument("--member")
    ap.add_argument("--buffer-size", type=int, default=DEFAULT_BUFFER_SIZE)
    ap.add_argument("--no-head", action="store_true", help="probe size with a ranged GET")
    ap.add_argument("--header", action="append", default=[], metavar="NAME:VALUE")
    ap.add_argument("--verbose", action="store_true", help="log every request")
    ap.add_argument("--list", type=int)
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    headers = dict(h.split(":", 1) for h in args.header)
    headers = {k.strip(): v.strip() for k, v in headers.items()}

    rdr = RangeStream(
        args.url,
        headers,
        buffer_size=args.buffer_size,
        use_head=not args.no_head,
        log_requests=args.verbose,
    )

    with rdr:
        with ZipFile(rdr) as zf:
            infos = zf.infolist()
            print(f"Archive size: {rdr.size()} bytes; entries: {len(infos)}")
            if args.list:
                for i, info in enumerate(infos[: args.list], 1):
                    kind = "/" if info.is_dir() else ""
                    print(f"[{i:3}] {info.filename}{kind}  {info.file_size} bytes")
                return
            target = args.member or next(i.filename for i in infos if not i.is_dir())
            print("Reading:", target)
            t0 = time.time()
            data = zf.read(target)
            dt = time.time() - t0
            crc_calc = binascii.crc32(data) & 0xFFFFFFFF
            print(f"Read {len(data)} bytes in {dt:.3f}s, CRC32={crc_calc:08x}")


if __name__ == "__main__":
    main()
