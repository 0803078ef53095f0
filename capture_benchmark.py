#!/usr/bin/env python3

import argparse
import asyncio
import sys
import time
from pathlib import Path
from urllib.parse import parse_qsl

from capture_manager import CaptureManager
from config import load_config
from dithering import build_operations
from params_parser import InvalidParamsError, parse_capture_params
from raster import RasterBackend


def benchmark_processing(args, capture_request):
    """Quantize an existing screenshot repeatedly, no browser involved."""
    source = Path(args.image).read_bytes()
    backend = RasterBackend()
    operations = build_operations(capture_request.format.value, capture_request.rotate,
                                  capture_request.invert, capture_request.dithering)
    print(f'Processing {args.image} {args.runs} times with {len(operations)} operations')

    timings = []
    image = b''
    for i in range(args.runs):
        start = time.time()
        image = backend.apply(source, operations)
        timings.append(time.time() - start)
        if i % 10 == 0:
            print(f'Run {i+1:4d}/{args.runs}: {timings[-1]*1000:.1f}ms, {len(image)} bytes')

    total = sum(timings)
    print(f'\nProcessing completed!')
    print(f'Average time per image: {(total/len(timings))*1000:.1f}ms')
    print(f'Output size: {len(image)} bytes')
    return image


async def benchmark_captures(args, capture_request):
    config = load_config()
    if args.keep_browser_open:
        config.keep_browser_open = True
    manager = CaptureManager(config)
    output_dir = Path(args.output_dir)
    output_dir.mkdir(exist_ok=True)

    print(f'Starting {args.runs} captures of {capture_request.target_url or capture_request.page_path}')
    print(f'Viewport: {capture_request.viewport.width}x{capture_request.viewport.height}, '
          f'format: {capture_request.format.value}, dithering: {bool(capture_request.dithering)}')

    start_time = time.time()
    successful = 0
    total_navigation_ms = 0
    total_capture_ms = 0

    try:
        for i in range(args.runs):
            try:
                result = await manager.capture(capture_request)
            except Exception as e:
                print(f'Failed capture {i}: {e}')
                continue

            if not args.no_save:
                filename = output_dir / f'capture_{i:04d}.{capture_request.format.value}'
                filename.write_bytes(result.image)

            successful += 1
            total_navigation_ms += result.navigation_ms
            total_capture_ms += result.capture_ms
            if i % 10 == 0:
                print(f'Capture {i+1:4d}/{args.runs}: total={result.capture_ms}ms, '
                      f'navigation={result.navigation_ms}ms, size={len(result.image)} bytes')
    finally:
        await manager.shutdown()

    total_time = time.time() - start_time
    print(f'\nCapture completed!')
    print(f'Total time: {total_time:.2f} seconds')
    print(f'Successful captures: {successful}/{args.runs}')
    if successful:
        print(f'Average capture time: {total_capture_ms/successful:.1f}ms')
        print(f'Average navigation time: {total_navigation_ms/successful:.1f}ms')
        if total_capture_ms:
            print(f'Time breakdown: {(total_navigation_ms/total_capture_ms)*100:.1f}% navigation')
    if successful < args.runs:
        print(f'Failed captures: {args.runs - successful}')


def main():
    parser = argparse.ArgumentParser(description='Measure capture and e-ink processing speed')
    parser.add_argument('path', nargs='?', default='/lovelace/0', help='Dashboard path (default: /lovelace/0)')
    parser.add_argument('--params', type=str, default='viewport=800x480',
                        help='Capture query string, e.g. "viewport=800x480&dithering&palette=bw"')
    parser.add_argument('--runs', type=int, default=10, help='Number of captures (default: 10)')
    parser.add_argument('--output-dir', type=str, default='captures', help='Output directory for images')
    parser.add_argument('--no-save', action='store_true', help='Skip saving files')
    parser.add_argument('--keep-browser-open', action='store_true', help='Keep the browser between captures')
    parser.add_argument('--image', type=str, help='Benchmark processing only, using this PNG as the screenshot')
    args = parser.parse_args()

    params = dict(parse_qsl(args.params, keep_blank_values=True))
    try:
        capture_request = parse_capture_params(params, args.path)
    except InvalidParamsError as e:
        print(f'Error: {e}')
        sys.exit(1)

    if args.image:
        image = benchmark_processing(args, capture_request)
        if not args.no_save:
            output_dir = Path(args.output_dir)
            output_dir.mkdir(exist_ok=True)
            (output_dir / f'processed.{capture_request.format.value}').write_bytes(image)
        return

    asyncio.run(benchmark_captures(args, capture_request))


if __name__ == '__main__':
    main()
