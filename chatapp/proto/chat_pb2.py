# -*- coding: utf-8 -*-
# Protocol buffer module for chatapp/proto/chat.proto.
# Regenerate with:
#   python -m grpc_tools.protoc -I. --python_out=. --grpc_python_out=. chatapp/proto/chat.proto
"""Message classes for chat.proto (ChatEnvelope, ChatRequest, ChatReply)."""
from google.protobuf import descriptor_pb2 as _descriptor_pb2
from google.protobuf import descriptor_pool as _descriptor_pool
from google.protobuf.internal import builder as _builder

from google.protobuf import struct_pb2 as google_dot_protobuf_dot_struct__pb2  # noqa: F401

_FIELD = _descriptor_pb2.FieldDescriptorProto
_STRUCT = '.google.protobuf.Struct'

_MESSAGES = (
    ('ChatEnvelope', (('type', 1, _FIELD.TYPE_STRING),
                      ('id', 2, _FIELD.TYPE_STRING),
                      ('payload', 3, _STRUCT))),
    ('ChatRequest', (('user_id', 1, _FIELD.TYPE_STRING),
                     ('params', 2, _STRUCT))),
    ('ChatReply', (('success', 1, _FIELD.TYPE_BOOL),
                   ('error', 2, _FIELD.TYPE_STRING),
                   ('code', 3, _FIELD.TYPE_STRING),
                   ('data', 4, _STRUCT))),
)

_UNARY_METHODS = (
    'ListUserGroups',
    'GetMessages',
    'GetUnreadCount',
    'MarkMessagesRead',
    'ListNotifications',
    'GetNotificationUnreadCount',
    'MarkNotificationRead',
    'MarkAllNotificationsRead',
    'DeleteNotification',
)


def _file_descriptor_proto():
    fdp = _descriptor_pb2.FileDescriptorProto(
        name='chatapp/proto/chat.proto',
        package='chatapp',
        syntax='proto3',
        dependency=['google/protobuf/struct.proto'],
    )
    for message_name, fields in _MESSAGES:
        message = fdp.message_type.add(name=message_name)
        for field_name, number, field_type in fields:
            field = message.field.add(name=field_name, number=number, label=_FIELD.LABEL_OPTIONAL)
            if isinstance(field_type, str):
                field.type = _FIELD.TYPE_MESSAGE
                field.type_name = field_type
            else:
                field.type = field_type
    service = fdp.service.add(name='ChatService')
    service.method.add(name='OpenStream', input_type='.chatapp.ChatEnvelope', output_type='.chatapp.ChatEnvelope',
                       client_streaming=True, server_streaming=True)
    for method_name in _UNARY_METHODS:
        service.method.add(name=method_name, input_type='.chatapp.ChatRequest', output_type='.chatapp.ChatReply')
    return fdp


DESCRIPTOR = _descriptor_pool.Default().AddSerializedFile(_file_descriptor_proto().SerializeToString())

_globals = globals()
_builder.BuildMessageAndEnumDescriptors(DESCRIPTOR, _globals)
_builder.BuildTopDescriptorsAndMessages(DESCRIPTOR, 'chatapp.proto.chat_pb2', _globals)
