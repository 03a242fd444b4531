# Client and server classes corresponding to chatapp/proto/chat.proto.
"""gRPC stub, servicer base and registration for ``chatapp.ChatService``."""
import grpc

from . import chat_pb2 as chat__pb2

SERVICE_NAME = 'chatapp.ChatService'


class ChatServiceStub(object):
    """Client stub for ChatService."""

    def __init__(self, channel):
        """Constructor.

        Args:
            channel: A grpc.Channel.
        """
        self.OpenStream = channel.stream_stream(
                '/chatapp.ChatService/OpenStream',
                request_serializer=chat__pb2.ChatEnvelope.SerializeToString,
                response_deserializer=chat__pb2.ChatEnvelope.FromString,
                )
        self.ListUserGroups = channel.unary_unary(
                '/chatapp.ChatService/ListUserGroups',
                request_serializer=chat__pb2.ChatRequest.SerializeToString,
                response_deserializer=chat__pb2.ChatReply.FromString,
                )
        self.GetMessages = channel.unary_unary(
                '/chatapp.ChatService/GetMessages',
                request_serializer=chat__pb2.ChatRequest.SerializeToString,
                response_deserializer=chat__pb2.ChatReply.FromString,
                )
        self.GetUnreadCount = channel.unary_unary(
                '/chatapp.ChatService/GetUnreadCount',
                request_serializer=chat__pb2.ChatRequest.SerializeToString,
                response_deserializer=chat__pb2.ChatReply.FromString,
                )
        self.MarkMessagesRead = channel.unary_unary(
                '/chatapp.ChatService/MarkMessagesRead',
                request_serializer=chat__pb2.ChatRequest.SerializeToString,
                response_deserializer=chat__pb2.ChatReply.FromString,
                )
        self.ListNotifications = channel.unary_unary(
                '/chatapp.ChatService/ListNotifications',
                request_serializer=chat__pb2.ChatRequest.SerializeToString,
                response_deserializer=chat__pb2.ChatReply.FromString,
                )
        self.GetNotificationUnreadCount = channel.unary_unary(
                '/chatapp.ChatService/GetNotificationUnreadCount',
                request_serializer=chat__pb2.ChatRequest.SerializeToString,
                response_deserializer=chat__pb2.ChatReply.FromString,
                )
        self.MarkNotificationRead = channel.unary_unary(
                '/chatapp.ChatService/MarkNotificationRead',
                request_serializer=chat__pb2.ChatRequest.SerializeToString,
                response_deserializer=chat__pb2.ChatReply.FromString,
                )
        self.MarkAllNotificationsRead = channel.unary_unary(
                '/chatapp.ChatService/MarkAllNotificationsRead',
                request_serializer=chat__pb2.ChatRequest.SerializeToString,
                response_deserializer=chat__pb2.ChatReply.FromString,
                )
        self.DeleteNotification = channel.unary_unary(
                '/chatapp.ChatService/DeleteNotification',
                request_serializer=chat__pb2.ChatRequest.SerializeToString,
                response_deserializer=chat__pb2.ChatReply.FromString,
                )


class ChatServiceServicer(object):
    """Server-side base class for ChatService."""

    def OpenStream(self, request_iterator, context):
        context.set_code(grpc.StatusCode.UNIMPLEMENTED)
        context.set_details('Method not implemented!')
        raise NotImplementedError('Method not implemented!')

    def ListUserGroups(self, request, context):
        context.set_code(grpc.StatusCode.UNIMPLEMENTED)
        context.set_details('Method not implemented!')
        raise NotImplementedError('Method not implemented!')

    def GetMessages(self, request, context):
        context.set_code(grpc.StatusCode.UNIMPLEMENTED)
        context.set_details('Method not implemented!')
        raise NotImplementedError('Method not implemented!')

    def GetUnreadCount(self, request, context):
        context.set_code(grpc.StatusCode.UNIMPLEMENTED)
        context.set_details('Method not implemented!')
        raise NotImplementedError('Method not implemented!')

    def MarkMessagesRead(self, request, context):
        context.set_code(grpc.StatusCode.UNIMPLEMENTED)
        context.set_details('Method not implemented!')
        raise NotImplementedError('Method not implemented!')

    def ListNotifications(self, request, context):
        context.set_code(grpc.StatusCode.UNIMPLEMENTED)
        context.set_details('Method not implemented!')
        raise NotImplementedError('Method not implemented!')

    def GetNotificationUnreadCount(self, request, context):
        context.set_code(grpc.StatusCode.UNIMPLEMENTED)
        context.set_details('Method not implemented!')
        raise NotImplementedError('Method not implemented!')

    def MarkNotificationRead(self, request, context):
        context.set_code(grpc.StatusCode.UNIMPLEMENTED)
        context.set_details('Method not implemented!')
        raise NotImplementedError('Method not implemented!')

    def MarkAllNotificationsRead(self, request, context):
        context.set_code(grpc.StatusCode.UNIMPLEMENTED)
        context.set_details('Method not implemented!')
        raise NotImplementedError('Method not implemented!')

    def DeleteNotification(self, request, context):
        context.set_code(grpc.StatusCode.UNIMPLEMENTED)
        context.set_details('Method not implemented!')
        raise NotImplementedError('Method not implemented!')


def _unary_handler(method):
    return grpc.unary_unary_rpc_method_handler(
            method,
            request_deserializer=chat__pb2.ChatRequest.FromString,
            response_serializer=chat__pb2.ChatReply.SerializeToString,
    )


def add_ChatServiceServicer_to_server(servicer, server):
    rpc_method_handlers = {
            'OpenStream': grpc.stream_stream_rpc_method_handler(
                    servicer.OpenStream,
                    request_deserializer=chat__pb2.ChatEnvelope.FromString,
                    response_serializer=chat__pb2.ChatEnvelope.SerializeToString,
            ),
            'ListUserGroups': _unary_handler(servicer.ListUserGroups),
            'GetMessages': _unary_handler(servicer.GetMessages),
            'GetUnreadCount': _unary_handler(servicer.GetUnreadCount),
            'MarkMessagesRead': _unary_handler(servicer.MarkMessagesRead),
            'ListNotifications': _unary_handler(servicer.ListNotifications),
            'GetNotificationUnreadCount': _unary_handler(servicer.GetNotificationUnreadCount),
            'MarkNotificationRead': _unary_handler(servicer.MarkNotificationRead),
            'MarkAllNotificationsRead': _unary_handler(servicer.MarkAllNotificationsRead),
            'DeleteNotification': _unary_handler(servicer.DeleteNotification),
    }
    generic_handler = grpc.method_handlers_generic_handler(SERVICE_NAME, rpc_method_handlers)
    server.add_generic_rpc_handlers((generic_handler,))
