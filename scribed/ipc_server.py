"""IPC server implementation using Unix domain sockets."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Set

from pydantic import ValidationError

from .errors import AlreadyInProgress, DecodeError, ScribeError
from .ipc_models import (
    AckResponse,
    CancelCommand,
    CommandWrapper,
    DeleteCommand,
    ErrorResponse,
    ExportCommand,
    ImportCommand,
    ResponseWrapper,
    SaveCommand,
    SelectCommand,
    SessionsCommand,
    SessionsResponse,
    ShutdownCommand,
    StartCommand,
    StateNotification,
    StatusCommand,
    StatusResponse,
    StopCommand,
    SubscribeCommand,
    UploadCommand,
)
from .pipeline_manager import PipelineManager
from .state import DaemonStateEnum, DaemonStateManager

logger = logging.getLogger(__name__)

# Size limit for incoming messages (64KB should be plenty for commands)
MAX_MESSAGE_SIZE = 64 * 1024
MESSAGE_TERMINATOR = b"\n"


class IPCServer:
    """Handles IPC communication over Unix domain socket."""

    def __init__(
        self,
        socket_path: Path,
        state_manager: DaemonStateManager,
        shutdown_event: asyncio.Event,
        pipeline_manager: PipelineManager,
    ):
        """Initialize the IPC server.

        Args:
            socket_path: Path to the Unix domain socket
            state_manager: Daemon state manager instance
            shutdown_event: Event to signal daemon shutdown
            pipeline_manager: The pipeline manager instance.
        """
        self.socket_path = socket_path
        self.state_manager = state_manager
        self.shutdown_event = shutdown_event
        self.pipeline_manager = pipeline_manager

        self._server: Optional[asyncio.Server] = None
        self._client_tasks: Set[asyncio.Task] = set()
        self._subscribers: Set[asyncio.StreamWriter] = set()

        self.state_manager.add_observer(self._on_state_change)

    def _on_state_change(
        self, new_state: DaemonStateEnum, error: Optional[str]
    ) -> None:
        """Broadcast state changes to subscribers."""
        if not self._subscribers:
            return

        try:
            notification = ResponseWrapper(
                root=StateNotification(status=self.pipeline_manager.snapshot())
            )
            asyncio.create_task(self._broadcast_notification(notification))
        except Exception as e:
            logger.error(f"Error preparing state notification: {e}")

    async def _broadcast_notification(self, notification: ResponseWrapper) -> None:
        """Broadcast a notification to all subscribers."""
        if not self._subscribers:
            return

        data = notification.model_dump_json().encode("utf-8") + MESSAGE_TERMINATOR

        for writer in list(self._subscribers):
            if writer.is_closing():
                self._subscribers.discard(writer)
                continue

            try:
                writer.write(data)
                await writer.drain()
            except Exception as e:
                logger.warning(f"Error broadcasting to subscriber: {e}")
                self._subscribers.discard(writer)

    async def _send_response(
        self, writer: asyncio.StreamWriter, response: ResponseWrapper
    ) -> None:
        try:
            response_json = response.model_dump_json()
            writer.write(response_json.encode("utf-8") + MESSAGE_TERMINATOR)
            await writer.drain()
            logger.debug(f"Sent response: {response_json[:200]}")
        except Exception as e:
            logger.error(f"Error sending response: {e}")

    async def _send_ack(self, writer: asyncio.StreamWriter) -> None:
        await self._send_response(writer, ResponseWrapper(root=AckResponse()))

    async def _send_error(self, writer: asyncio.StreamWriter, message: str) -> None:
        await self._send_response(
            writer, ResponseWrapper(root=ErrorResponse(message=message))
        )

    async def _send_sessions(self, writer: asyncio.StreamWriter) -> None:
        reconciler = self.pipeline_manager.reconciler
        await self._send_response(
            writer,
            ResponseWrapper(
                root=SessionsResponse(
                    sessions=reconciler.sessions,
                    selected_session_id=reconciler.selected_id,
                )
            ),
        )

    async def _handle_start_command(
        self, writer: asyncio.StreamWriter, command: StartCommand
    ) -> None:
        logger.info(f"Handling Start command (Language: {command.language})")
        try:
            await self.pipeline_manager.start_recording(command.language)
            await self._send_ack(writer)
        except ScribeError as e:
            await self._send_error(writer, f"Failed to start recording: {e}")

    async def _handle_stop_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Stop command")
        try:
            await self.pipeline_manager.stop_recording()
            await self._send_ack(writer)
        except AlreadyInProgress as e:
            await self._send_error(writer, f"Recording discarded: {e}")
        except Exception as e:
            error_msg = f"Error stopping recording: {e}"
            logger.exception(error_msg)
            self.state_manager.set_error(error_msg)
            await self._send_error(writer, error_msg)

    async def _handle_upload_command(
        self, writer: asyncio.StreamWriter, command: UploadCommand
    ) -> None:
        logger.info(f"Handling Upload command ({command.path})")
        try:
            await self.pipeline_manager.upload_file(
                Path(command.path).expanduser(), command.language
            )
            await self._send_ack(writer)
        except AlreadyInProgress as e:
            await self._send_error(writer, f"Cannot upload: {e}")
        except OSError as e:
            await self._send_error(writer, f"Cannot read audio file: {e}")

    async def _handle_cancel_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Cancel command")
        if await self.pipeline_manager.cancel_transcription():
            await self._send_ack(writer)
        else:
            await self._send_error(writer, "No transcription is running")

    async def _handle_status_command(self, writer: asyncio.StreamWriter) -> None:
        logger.debug("Handling Status command")
        response = ResponseWrapper(
            root=StatusResponse(status=self.pipeline_manager.snapshot())
        )
        await self._send_response(writer, response)

    async def _handle_select_command(
        self, writer: asyncio.StreamWriter, command: SelectCommand
    ) -> None:
        logger.info(f"Handling Select command ({command.session_id})")
        try:
            self.pipeline_manager.select_session(command.session_id)
        except KeyError:
            await self._send_error(writer, f"Unknown session: {command.session_id}")
            return
        await self._send_sessions(writer)

    async def _handle_delete_command(
        self, writer: asyncio.StreamWriter, command: DeleteCommand
    ) -> None:
        logger.info(f"Handling Delete command ({command.session_id})")
        try:
            await self.pipeline_manager.delete_session(command.session_id)
        except ScribeError as e:
            await self._send_error(writer, str(e))
            return
        await self._send_sessions(writer)

    async def _handle_save_command(
        self, writer: asyncio.StreamWriter, command: SaveCommand
    ) -> None:
        logger.info("Handling Save command")
        try:
            await self.pipeline_manager.save_transcript(command.transcript)
        except ScribeError as e:
            await self._send_error(writer, str(e))
            return
        await self._send_ack(writer)

    async def _handle_export_command(
        self, writer: asyncio.StreamWriter, command: ExportCommand
    ) -> None:
        logger.info(f"Handling Export command ({command.path})")
        try:
            await self.pipeline_manager.export_sessions(Path(command.path).expanduser())
        except (OSError, ScribeError) as e:
            await self._send_error(writer, f"Cannot export sessions: {e}")
            return
        await self._send_ack(writer)

    async def _handle_import_command(
        self, writer: asyncio.StreamWriter, command: ImportCommand
    ) -> None:
        logger.info(f"Handling Import command ({command.path})")
        try:
            await self.pipeline_manager.import_sessions(Path(command.path).expanduser())
        except OSError as e:
            await self._send_error(writer, f"Cannot read backup file: {e}")
            return
        except (ValueError, DecodeError) as e:
            await self._send_error(writer, f"Invalid backup file: {e}")
            return
        except ScribeError as e:
            await self._send_error(writer, str(e))
            return
        await self._send_sessions(writer)

    async def _handle_shutdown_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Shutdown command")
        await self._send_ack(writer)
        self.shutdown_event.set()

    async def _handle_subscribe_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Subscribe command")
        self._subscribers.add(writer)

        # Send initial status immediately
        notification = ResponseWrapper(
            root=StateNotification(status=self.pipeline_manager.snapshot())
        )
        await self._send_response(writer, notification)

    async def _handle_command(self, writer: asyncio.StreamWriter, message: str) -> bool:
        """Parse and handle a command message.

        Returns:
            True if connection should be kept alive, False to close it
        """
        try:
            command = CommandWrapper.model_validate_json(message).root
            logger.debug(f"Parsed command: {command.command}")

            if isinstance(command, StartCommand):
                await self._handle_start_command(writer, command)
            elif isinstance(command, StopCommand):
                await self._handle_stop_command(writer)
            elif isinstance(command, UploadCommand):
                await self._handle_upload_command(writer, command)
            elif isinstance(command, CancelCommand):
                await self._handle_cancel_command(writer)
            elif isinstance(command, StatusCommand):
                await self._handle_status_command(writer)
            elif isinstance(command, SessionsCommand):
                await self._send_sessions(writer)
            elif isinstance(command, SelectCommand):
                await self._handle_select_command(writer, command)
            elif isinstance(command, DeleteCommand):
                await self._handle_delete_command(writer, command)
            elif isinstance(command, SaveCommand):
                await self._handle_save_command(writer, command)
            elif isinstance(command, ExportCommand):
                await self._handle_export_command(writer, command)
            elif isinstance(command, ImportCommand):
                await self._handle_import_command(writer, command)
            elif isinstance(command, SubscribeCommand):
                await self._handle_subscribe_command(writer)
            elif isinstance(command, ShutdownCommand):
                await self._handle_shutdown_command(writer)
                return False
            else:
                logger.error(f"Unhandled command type: {type(command)}")
                await self._send_error(writer, "Internal server error")
            return True

        except ValidationError as e:
            logger.error(f"Invalid command format: {e}")
            await self._send_error(writer, f"Invalid command format: {e}")
            return True

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON: {e}")
            await self._send_error(writer, f"Invalid JSON format: {e}")
            return True

        except Exception as e:
            logger.exception("Error handling command")
            await self._send_error(writer, f"Internal error: {e}")
            return True

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername") or "Unknown"
        logger.info(f"Client connected: {peer}")

        task = asyncio.current_task()
        assert task is not None  # for type checking
        self._client_tasks.add(task)

        try:
            while True:
                try:
                    timeout = None if writer in self._subscribers else 5.0

                    data = await asyncio.wait_for(
                        reader.readuntil(MESSAGE_TERMINATOR), timeout=timeout
                    )

                    if not data:  # EOF
                        logger.info(f"Client disconnected (EOF): {peer}")
                        break

                    message = data.rstrip(MESSAGE_TERMINATOR).decode("utf-8")
                    logger.debug(f"Received from {peer}: {message}")

                    keep_alive = await self._handle_command(writer, message)
                    if not keep_alive:
                        break

                except asyncio.TimeoutError:
                    logger.warning(f"Timeout reading from client {peer}")
                    break
                except asyncio.IncompleteReadError:
                    logger.info(f"Client disconnected (incomplete read): {peer}")
                    break
                except asyncio.LimitOverrunError:
                    logger.warning(f"Message from {peer} exceeds the buffer limit")
                    break
                except ConnectionError as e:
                    logger.warning(f"Connection error with {peer}: {e}")
                    break
                except asyncio.CancelledError:
                    logger.info(f"Client connection cancelled: {peer}")
                    break
                except Exception as e:
                    logger.exception(f"Error handling client {peer}: {e}")
                    break

        finally:
            logger.info(f"Closing connection with {peer}")
            self._subscribers.discard(writer)
            if not writer.is_closing():
                writer.close()
                try:
                    await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
                except Exception as e:
                    logger.warning(f"Error during connection cleanup: {e}")

            self._client_tasks.discard(task)
            logger.debug(f"Connection closed: {peer}")

    async def start(self) -> None:
        """Start the IPC server."""
        if self._server:
            logger.warning("Server already started")
            return

        if self.socket_path.exists():
            if self.socket_path.is_socket():
                logger.info(f"Removing existing socket file: {self.socket_path}")
                self.socket_path.unlink()
            else:
                logger.error(f"Path exists but is not a socket: {self.socket_path}")
                raise OSError(f"Path exists but is not a socket: {self.socket_path}")

        try:
            self.socket_path.parent.mkdir(parents=True, exist_ok=True)
            self._server = await asyncio.start_unix_server(
                self._handle_client,
                path=str(self.socket_path),
                limit=MAX_MESSAGE_SIZE,
            )
            logger.info(f"IPC server listening on {self.socket_path}")

        except Exception as e:
            logger.error(f"Failed to start IPC server: {e}")
            if self.socket_path.exists():
                self.socket_path.unlink(missing_ok=True)
            raise

    async def stop(self) -> None:
        """Stop the IPC server."""
        if not self._server:
            logger.warning("Server not running")
            return

        logger.info("Stopping IPC server...")

        # Close subscriber connections first to unblock their read loops
        for writer in list(self._subscribers):
            if not writer.is_closing():
                writer.close()
        self._subscribers.clear()

        self._server.close()
        await self._server.wait_closed()
        self._server = None

        if self._client_tasks:
            logger.info(f"Cancelling {len(self._client_tasks)} client tasks...")
            for task in self._client_tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*self._client_tasks, return_exceptions=True)
            self._client_tasks.clear()

        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Error removing socket file: {e}")

        logger.info("IPC server stopped")
