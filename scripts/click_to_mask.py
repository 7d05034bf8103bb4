#!/usr/bin/env python3
"""Segment clicked objects on one image and composite text behind them.

Core logic lives in `textbehind.pipelines.click_to_mask`. Clicks are given in
original image pixels as `x,y`; `;` separates additive clicks of one object and
each `--object` starts a new one, e.g. `--object "120,80;140,95" --object "300,200"`.
"""

import argparse
import sys
from pathlib import Path

from textbehind.config import load_config
from textbehind.engines.sam2_torch import Sam2TorchEngine
from textbehind.pipelines.click_to_mask import ClickToMaskRun, run_click_to_mask
from textbehind.vision.vis import TextLayer


def _parse_clicks(raw: str) -> list[tuple[float, float]]:
    clicks: list[tuple[float, float]] = []
    for part in raw.split(";"):
        part = part.strip()
        if not part:
            continue
        try:
            x, y = (float(v) for v in part.split(","))
        except ValueError as e:
            raise SystemExit(f"Invalid click {part!r}; expected x,y") from e
        clicks.append((x, y))
    return clicks


def main(argv: list[str]) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--image", type=str, required=True)
    ap.add_argument("--out_dir", type=str, default="outputs/click_to_mask")
    ap.add_argument("--object", dest="objects", action="append", default=[], required=True)
    ap.add_argument("--text", type=str, default="")
    ap.add_argument("--text_xy", type=str, default="0,0")
    ap.add_argument("--font_size", type=int, default=96)
    ap.add_argument("--config", type=str, default=None)
    ap.add_argument("--sam2_config", type=str, default=None)
    ap.add_argument("--sam2_ckpt", type=str, default=None)
    ap.add_argument("--device", type=str, default=None)
    ap.add_argument("--refine_merged", action="store_true")
    ap.add_argument("--overwrite", action="store_true")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    image = Path(args.image).expanduser().resolve()
    if not image.is_file():
        raise SystemExit(f"--image is not a file: {image}")

    seg = load_config(
        Path(args.config) if args.config else None,
        sam2_config=args.sam2_config,
        sam2_ckpt=args.sam2_ckpt,
        device=args.device,
    )
    objects = [_parse_clicks(o) for o in args.objects]

    layers: list[TextLayer] = []
    if args.text:
        (tx, ty), *_ = _parse_clicks(args.text_xy)
        layers.append(TextLayer(text=args.text, x=tx, y=ty, font_size=int(args.font_size)))

    engine = Sam2TorchEngine(seg.sam2_config, seg.sam2_ckpt, seg.device, input_size=seg.input_size)
    payload = run_click_to_mask(
        ClickToMaskRun(
            image_path=image,
            outdir=Path(args.out_dir).expanduser().resolve(),
            objects=objects,
            text_layers=layers,
            refine_merged=bool(args.refine_merged),
            overwrite=bool(args.overwrite),
            verbose=bool(args.verbose),
        ),
        engine=engine,
        seg_config=seg,
    )
    for obj in payload.get("objects", []):
        print(f"object {obj['index']}: best={obj['best_index']} scores={obj['scores']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
