"""
Create HDR - merge a bracket folder into a radiance map

- Loads every image of the folder (EV from EXIF when present)
- Optional MTB translation alignment
- Fusion with a selectable operator / weight function / response curve
- Optional patch based antighosting (gradient domain reconstruction)
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from api.services.fusion import FusionOperator, FusionOperatorConfig
from api.services.hdr_creation import HdrCreationManager
from api.services.hdr_job import write_mask, write_radiance
from api.services.image_reader import list_image_files
from api.services.progress import ProgressHelper
from api.services.radiometric import ResponseType, WeightType

logger = logging.getLogger("create_hdr")


def create_hdr(args: argparse.Namespace) -> int:
    input_dir = Path(args.input).resolve()
    output_dir = Path(args.output).resolve()
    image_paths = list_image_files(input_dir)
    if len(image_paths) < 2:
        raise SystemExit(f"Need at least two images in: {input_dir}")

    config = FusionOperatorConfig(
        weight_function=WeightType(args.weight),
        response_curve=ResponseType(args.response),
        fusion_operator=FusionOperator(args.operator),
        input_response_file=args.response_in,
        output_response_file=args.response_out,
    )

    manager = HdrCreationManager()
    try:
        manager.set_config(config)
        report = manager.load_files([str(p) for p in image_paths]).result()
        for path in report.invalid:
            logger.warning("Skipped unreadable file: %s", path)
        for path in manager.store.files_without_exif():
            logger.warning("No exposure data in %s, assuming EV 0", path)
        logger.info("Loaded %d exposures, EV offset %.2f", len(manager.store), manager.store.ev_offset)

        if args.align:
            offsets = manager.align_with_mtb()
            logger.info("MTB offsets: %s", offsets)

        outputs = write_radiance(manager.create_hdr(), output_dir, "hdr")
        print(f"Saved: {outputs['hdr']}")

        if args.deghost:
            detection = manager.compute_patches(args.threshold)
            print(f"Ghosted patches: {detection.ghosted_percent:.2f}% (reference exposure {detection.reference_index})")
            write_mask(detection.mask, output_dir / "ghost_mask.png")
            progress = ProgressHelper(callback=lambda v: logger.debug("Deghosting %d%%", v))
            deghosted = manager.do_antighosting(detection.mask, detection.reference_index, progress=progress)
            if deghosted is None:
                logger.error("Deghosting canceled")
                return 1
            outputs = write_radiance(deghosted, output_dir, "deghosted")
            print(f"Saved: {outputs['hdr']}")
    finally:
        manager.close()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Merge a bracket of exposures into an HDR radiance map")
    parser.add_argument("--input", required=True, help="Input folder containing a single bracket set")
    parser.add_argument("--output", required=True, help="Output folder")
    parser.add_argument("--operator", choices=[o.value for o in FusionOperator], default=FusionOperator.DEBEVEC.value)
    parser.add_argument("--weight", choices=[w.value for w in WeightType], default=WeightType.TRIANGULAR.value)
    parser.add_argument(
        "--response",
        choices=[r.value for r in ResponseType if r != ResponseType.CUSTOM],
        default=ResponseType.LINEAR.value,
    )
    parser.add_argument("--response-in", default=None, help="Read the response curve from this file")
    parser.add_argument("--response-out", default=None, help="Write the response curve used for fusion to this file")
    parser.add_argument("--align", action="store_true", help="Align the exposures with MTB before merging")
    parser.add_argument("--deghost", action="store_true", help="Detect ghosts and write a deghosted HDR as well")
    parser.add_argument("--threshold", type=float, default=3.0, help="Ghost detection threshold (higher flags fewer patches)")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    raise SystemExit(create_hdr(args))


if __name__ == "__main__":
    main()
