"""
Glyph range PBF messages and font stack composition.

The message classes are built at import time from a descriptor of the
``llmr.glyphs`` schema used by MapLibre/Mapbox glyph servers, so no generated
``_pb2`` module is needed.
"""

import logging
from typing import Dict, Optional, Sequence

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

logger = logging.getLogger("tileserver")

_F = descriptor_pb2.FieldDescriptorProto


def _field(message, name: str, number: int, field_type: int, label: int, type_name: str = "") -> None:
    field = message.field.add(name=name, number=number, type=field_type, label=label)
    # upb rejects an explicitly empty type_name on scalar fields
    if type_name:
        field.type_name = type_name


def _glyphs_file() -> descriptor_pb2.FileDescriptorProto:
    proto = descriptor_pb2.FileDescriptorProto(
        name="llmr_glyphs.proto", package="llmr.glyphs", syntax="proto2"
    )

    glyph = proto.message_type.add(name="glyph")
    _field(glyph, "id", 1, _F.TYPE_UINT32, _F.LABEL_REQUIRED)
    _field(glyph, "bitmap", 2, _F.TYPE_BYTES, _F.LABEL_OPTIONAL)
    _field(glyph, "width", 3, _F.TYPE_UINT32, _F.LABEL_REQUIRED)
    _field(glyph, "height", 4, _F.TYPE_UINT32, _F.LABEL_REQUIRED)
    _field(glyph, "left", 5, _F.TYPE_SINT32, _F.LABEL_REQUIRED)
    _field(glyph, "top", 6, _F.TYPE_SINT32, _F.LABEL_REQUIRED)
    _field(glyph, "advance", 7, _F.TYPE_UINT32, _F.LABEL_REQUIRED)

    stack = proto.message_type.add(name="fontstack")
    _field(stack, "name", 1, _F.TYPE_STRING, _F.LABEL_REQUIRED)
    _field(stack, "range", 2, _F.TYPE_STRING, _F.LABEL_REQUIRED)
    _field(stack, "glyphs", 3, _F.TYPE_MESSAGE, _F.LABEL_REPEATED, ".llmr.glyphs.glyph")

    glyphs = proto.message_type.add(name="glyphs")
    _field(glyphs, "stacks", 1, _F.TYPE_MESSAGE, _F.LABEL_REPEATED, ".llmr.glyphs.fontstack")
    return proto


_pool = descriptor_pool.DescriptorPool()
_pool.Add(_glyphs_file())

Glyph = message_factory.GetMessageClass(_pool.FindMessageTypeByName("llmr.glyphs.glyph"))
FontStack = message_factory.GetMessageClass(_pool.FindMessageTypeByName("llmr.glyphs.fontstack"))
Glyphs = message_factory.GetMessageClass(_pool.FindMessageTypeByName("llmr.glyphs.glyphs"))


def combine(buffers: Sequence[bytes], fontstack: Optional[str] = None) -> bytes:
    """
    Merge glyph range PBFs of several fonts into one.

    The first font to provide a codepoint wins. The merged stack is named after
    all contributing fonts (comma-joined) unless fontstack is given, and its
    glyphs are ordered by codepoint.

    Args:
        buffers: One glyph PBF per font, in font stack order.
        fontstack: Explicit name for the merged stack.

    Returns:
        Encoded ``glyphs`` message, or b"" if no buffer held a font stack.
    """
    names = []
    stack_range = ""
    by_id: Dict[int, object] = {}

    for buffer in buffers:
        decoded = Glyphs()
        try:
            decoded.ParseFromString(buffer)
        except DecodeError as e:
            logger.warning("Skipping undecodable glyph buffer: %s", e)
            continue
        if not decoded.stacks:
            continue
        stack = decoded.stacks[0]
        if not names:
            stack_range = stack.range
        names.append(stack.name)
        for glyph in stack.glyphs:
            by_id.setdefault(glyph.id, glyph)

    if not names:
        return b""

    merged = Glyphs()
    out = merged.stacks.add()
    out.name = fontstack or ", ".join(names)
    out.range = stack_range
    for glyph_id in sorted(by_id):
        out.glyphs.add().CopyFrom(by_id[glyph_id])
    return merged.SerializeToString()
