"""Message classes for ``notestore.proto``.

The descriptors are assembled with ``descriptor_pb2`` and registered in a
private pool, which yields the same classes ``protoc --python_out`` would
without a build step. Keep ``_MESSAGES`` in step with the ``.proto`` file.
"""

from __future__ import annotations

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

PACKAGE = "notesbridge.notestore"

_Field = descriptor_pb2.FieldDescriptorProto

# message name -> (field name, number, scalar type or message name, repeated)
_MESSAGES: dict[str, list[tuple[str, int, int | str, bool]]] = {
    "Color": [
        ("red", 1, _Field.TYPE_FLOAT, False),
        ("green", 2, _Field.TYPE_FLOAT, False),
        ("blue", 3, _Field.TYPE_FLOAT, False),
        ("alpha", 4, _Field.TYPE_FLOAT, False),
    ],
    "Font": [
        ("font_name", 1, _Field.TYPE_STRING, False),
        ("point_size", 2, _Field.TYPE_FLOAT, False),
        ("font_hints", 3, _Field.TYPE_INT32, False),
    ],
    "Checklist": [
        ("uuid", 1, _Field.TYPE_BYTES, False),
        ("done", 2, _Field.TYPE_INT32, False),
    ],
    "ParagraphStyle": [
        ("style_type", 1, _Field.TYPE_INT32, False),
        ("alignment", 2, _Field.TYPE_INT32, False),
        ("indent_amount", 4, _Field.TYPE_INT32, False),
        ("checklist", 5, "Checklist", False),
    ],
    "AttachmentInfo": [
        ("attachment_identifier", 1, _Field.TYPE_STRING, False),
        ("type_uti", 2, _Field.TYPE_STRING, False),
    ],
    "AttributeRun": [
        ("length", 1, _Field.TYPE_INT32, False),
        ("paragraph_style", 2, "ParagraphStyle", False),
        ("font", 3, "Font", False),
        ("font_weight", 5, _Field.TYPE_INT32, False),
        ("underlined", 6, _Field.TYPE_INT32, False),
        ("strikethrough", 7, _Field.TYPE_INT32, False),
        ("superscript", 8, _Field.TYPE_INT32, False),
        ("link", 9, _Field.TYPE_STRING, False),
        ("color", 10, "Color", False),
        ("attachment_info", 12, "AttachmentInfo", False),
    ],
    "Note": [
        ("note_text", 2, _Field.TYPE_STRING, False),
        ("attribute_run", 5, "AttributeRun", True),
    ],
    "Document": [
        ("version", 2, _Field.TYPE_INT32, False),
        ("note", 3, "Note", False),
    ],
    "NoteStoreProto": [
        ("document", 2, "Document", False),
    ],
}


def _file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="notesbridge/notestore.proto",
        package=PACKAGE,
        syntax="proto2",
    )
    for message_name, fields in _MESSAGES.items():
        message = file_proto.message_type.add(name=message_name)
        for name, number, kind, repeated in fields:
            field = message.field.add(
                name=name,
                number=number,
                label=_Field.LABEL_REPEATED if repeated else _Field.LABEL_OPTIONAL,
            )
            if isinstance(kind, str):
                field.type = _Field.TYPE_MESSAGE
                field.type_name = f".{PACKAGE}.{kind}"
            else:
                field.type = kind
    return file_proto


_pool = descriptor_pool.DescriptorPool()
DESCRIPTOR = _pool.AddSerializedFile(_file_descriptor().SerializeToString())


def _message_class(name: str):
    return message_factory.GetMessageClass(DESCRIPTOR.message_types_by_name[name])


Color = _message_class("Color")
Font = _message_class("Font")
Checklist = _message_class("Checklist")
ParagraphStyle = _message_class("ParagraphStyle")
AttachmentInfo = _message_class("AttachmentInfo")
AttributeRun = _message_class("AttributeRun")
Note = _message_class("Note")
Document = _message_class("Document")
NoteStoreProto = _message_class("NoteStoreProto")
