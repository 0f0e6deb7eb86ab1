"""
Compositing Module.

Responsibilities:
- Wire format <-> RGB working colorspace conversion
- Mask edge refinement
- Replace / blur background blending
"""

from .color_conversion import (
    to_working_colorspace,
    from_working_colorspace,
    extract_alpha,
)
from .frame_compositor import (
    composite,
    blend,
    refine_mask_edges,
    blurred_background,
    solid_background,
)
