"""
Command line
============
Single image:
    gpu-greyscale <input> <output> <mode> <block-dimension>
        mode: naive | optimized | test
        block-dimension: threads per block, a perfect square (256 = 16x16)

Batch:
    gpu-greyscale --input DIR --output DIR [--optimized] [--benchmark]
                  [--pipelined] [--clock event|wall] [--csv PATH] [--json PATH]
                  [--strict]
"""

import argparse
import sys
from pathlib import Path

import numpy as np

from . import codec
from .benchmark import format_report, save_csv, save_json
from .config import CLOCKS, RunConfig, detect_environment
from .errors import ConfigurationError, GreyscaleError
from .kernels import BLOCK_DIM, KernelVariant, block_side_from_threads, reference_greyscale
from .pipeline import GreyscalePipeline, Image


def print_info(msg):
    print(f"[INFO] {msg}")


def print_warning(msg):
    print(f"[WARNING] {msg}")


def print_error(msg):
    print(f"[ERROR] {msg}", file=sys.stderr)


# ============================================
# PARSERS
# ============================================

def build_single_parser():
    parser = argparse.ArgumentParser(
        prog='gpu-greyscale',
        description='Convert one image to greyscale on the GPU',
        epilog='Batch mode: gpu-greyscale --input DIR --output DIR [--optimized] [--benchmark]')
    parser.add_argument('input', help='Input image file')
    parser.add_argument('output', help='Output image file')
    parser.add_argument('mode', choices=['naive', 'optimized', 'test'],
                        help='Kernel variant, or test to verify both against the CPU')
    parser.add_argument('block_dimension', type=int,
                        help='Threads per block, a perfect square (256 = 16x16)')
    return parser


def build_batch_parser():
    parser = argparse.ArgumentParser(
        prog='gpu-greyscale',
        description='Convert a directory of images to greyscale on the GPU')
    parser.add_argument('--input', required=True,
                        help='Input directory (searched recursively) or image file')
    parser.add_argument('--output', required=True, help='Output directory')
    parser.add_argument('--optimized', action='store_true',
                        help='Use the shared-memory kernel (default: naive)')
    parser.add_argument('--benchmark', action='store_true',
                        help='Time every stage and print a performance summary')
    parser.add_argument('--pipelined', action='store_true',
                        help="Overlap one image's transfer-out with the next one's transfer-in")
    parser.add_argument('--clock', choices=CLOCKS, default=None,
                        help='Stage timer (default: event on a GPU, wall on the simulator)')
    parser.add_argument('--csv', help='Save per-image timings here (with --benchmark)')
    parser.add_argument('--json', help='Save the aggregate report here (with --benchmark)')
    parser.add_argument('--strict', action='store_true',
                        help='Exit 2 if any image failed')
    return parser


def is_batch_invocation(argv):
    return any(arg == '--input' or arg.startswith('--input=') for arg in argv)


# ============================================
# SINGLE IMAGE
# ============================================

def run_single(args, environment):
    input_path = Path(args.input)
    if not input_path.is_file():
        raise ConfigurationError(f"Input image file '{input_path}' does not exist")
    block_dim = block_side_from_threads(args.block_dimension)

    if args.mode == 'test':
        return run_verification(input_path, Path(args.output), block_dim, environment)

    config = RunConfig(KernelVariant.parse(args.mode), block_dim, environment=environment)
    pipeline = GreyscalePipeline(config)
    print_info(f"Device: {environment.describe()}")
    print_info(f"Kernel: {config.variant.value}, block {block_dim}x{block_dim}")

    try:
        rgb, w, h = codec.decode(input_path)
        image = Image(input_path.name, rgb, w, h)
        launch = pipeline.dispatcher.launch_config(w, h)
        print_info(f"Launch: grid {launch.grid[0]}x{launch.grid[1]}, "
                   f"{launch.threads:,} threads for {w * h:,} pixels")
        pipeline.process_image(image, writer=lambda _, grey, width, height:
                               codec.encode(grey, width, height, args.output))
    except GreyscaleError as exc:
        print_error(f"{exc.stage or 'run'} failed: {exc}")
        return 1

    print_info(f"Output saved to: {args.output}")
    return 0


def run_verification(input_path, output_path, block_dim, environment):
    """Run both kernels and the CPU reference; they must agree byte for byte."""
    print("=" * 60)
    print("KERNEL VERIFICATION")
    print("=" * 60)
    print(f"Device: {environment.describe()}")

    try:
        rgb, w, h = codec.decode(input_path)
        image = Image(input_path.name, rgb, w, h)
        naive = GreyscalePipeline(
            RunConfig(KernelVariant.NAIVE, block_dim, environment=environment)).process_image(image)
        shared = GreyscalePipeline(
            RunConfig(KernelVariant.SHARED, BLOCK_DIM, environment=environment)).process_image(image)
        expected = reference_greyscale(image.rgb, w, h)
        codec.encode(naive, w, h, output_path)
    except GreyscaleError as exc:
        print_error(f"{exc.stage or 'run'} failed: {exc}")
        return 1

    print(f"Image: {input_path} ({w}x{h}, {w * h:,} pixels)")
    all_ok = True
    for name, output in (("naive", naive), ("shared", shared)):
        mismatches = int(np.count_nonzero(output != expected))
        status = "PASS" if mismatches == 0 else "FAIL"
        print(f"  {name:<8} vs CPU: {status} ({mismatches} mismatched pixels)")
        all_ok = all_ok and mismatches == 0
    print("-" * 60)
    print_info(f"Output saved to: {output_path}")
    return 0 if all_ok else 1


# ============================================
# BATCH
# ============================================

def print_batch_summary(result, peak_bytes=None):
    print("\n" + "=" * 60)
    print("BATCH SUMMARY")
    print("=" * 60)
    print(f"  Succeeded: {result.succeeded}")
    print(f"  Failed:    {result.failed}")
    for kind, count in sorted(result.failure_reasons().items()):
        print(f"    {kind}: {count}")
    if peak_bytes:
        print(f"  Peak device memory: {peak_bytes:,} bytes")
    for failure in result.failures:
        print(f"  ✗ {failure.identifier} [{failure.stage}] {failure.message}")


def run_batch(args, environment):
    input_path = Path(args.input)
    output_dir = Path(args.output)
    if not input_path.exists():
        raise ConfigurationError(f"Input path '{input_path}' does not exist")
    if input_path.is_dir() and output_dir.resolve() == input_path.resolve():
        raise ConfigurationError("Output directory must differ from the input directory")

    variant = KernelVariant.SHARED if args.optimized else KernelVariant.NAIVE
    config = RunConfig(variant, benchmark=args.benchmark, clock=args.clock,
                       pipelined=args.pipelined, environment=environment)
    sources = codec.image_files(input_path)
    if not sources:
        raise ConfigurationError(f"No images found in {input_path}")

    pipeline = GreyscalePipeline(config, writer=codec.DirectoryWriter(output_dir))

    print("=" * 60)
    print("GPU GREYSCALE BATCH")
    print("=" * 60)
    print(f"Device: {environment.describe()}")
    print(f"Kernel: {config.variant.value}"
          + (", pipelined" if config.pipelined else "")
          + (f", benchmark ({config.clock} clock)" if config.benchmark else ""))
    print(f"Images: {len(sources)} from {input_path}")

    result = pipeline.process_batch(sources)
    print_batch_summary(result, pipeline.memory.peak_bytes)

    if config.benchmark and result.report is not None:
        print()
        print(format_report(result.report))
        if args.csv:
            print_info(f"CSV saved: {save_csv(result.samples, args.csv)}")
        if args.json:
            print_info(f"JSON saved: {save_json(result.report, args.json)}")
    elif args.csv or args.json:
        print_warning("--csv/--json need --benchmark; no report written")

    if args.strict and not result.ok:
        return 2
    return 0


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]

    if is_batch_invocation(argv):
        args = build_batch_parser().parse_args(argv)
        runner = run_batch
    else:
        args = build_single_parser().parse_args(argv)
        runner = run_single

    try:
        environment = detect_environment()
        if not environment.available:
            raise ConfigurationError("CUDA device not found; install a CUDA driver "
                                     "or set NUMBA_ENABLE_CUDASIM=1")
        return runner(args, environment)
    except ConfigurationError as exc:
        print_error(str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
