"""Post-processing stages, numeric helpers and previews for YUV420 camera frames."""

__version__ = "0.1.0"

__all__ = [
    "hdr",
    "histogram",
    "motion_detect",
    "negate",
    "object_classify",
    "pose_estimation",
    "preview",
    "pwl",
    "stage",
    "tf_stage",
]