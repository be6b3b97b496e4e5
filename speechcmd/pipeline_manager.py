"""Owns the speech pipeline: start, stream, fail and shut down."""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .audio_source import AudioSource, list_devices
from .capture import CaptureLoop, CaptureSession
from .commands import CommandMapper, CommandObserver, Subscription, UnrecognizedObserver
from .config import AppConfig
from .mailbox import Mailbox
from .output_parser import OutputParser, TranscriptionEvent
from .preflight import PreflightChecker
from .state import PipelineStateEnum, PipelineStateManager
from .supervisor import LineCallback, ProcessSupervisor
from .transport import TransportChannel, create_transport

logger = logging.getLogger(__name__)

SupervisorFactory = Callable[[LineCallback], ProcessSupervisor]
TransportFactory = Callable[[], TransportChannel]


class SpeechPipeline:
    """Microphone -> ffmpeg/whisper -> command events."""

    def __init__(
        self,
        config: AppConfig,
        state_manager: PipelineStateManager,
        audio_source: AudioSource,
        preflight: PreflightChecker,
        mapper: CommandMapper,
        supervisor_factory: Optional[SupervisorFactory] = None,
        transport_factory: Optional[TransportFactory] = None,
        device_lister: Callable[[], List[str]] = list_devices,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the pipeline. Nothing is started until start().

        Args:
            config: Application configuration.
            state_manager: The pipeline's single state holder.
            audio_source: Microphone capture, owned by the capture loop while streaming.
            preflight: Availability checker. Its verdict is cached between starts
                and checked again on restart().
            mapper: Command mapper holding the subscriber registry.
            supervisor_factory: Builds a ProcessSupervisor for a stdout callback.
            transport_factory: Builds a fresh TransportChannel per start.
            device_lister: Returns input device names.
            sleep: Coroutine used between loop ticks.
        """
        self.config = config
        self.state_manager = state_manager
        self.audio_source = audio_source
        self.preflight = preflight
        self.mapper = mapper
        self._supervisor_factory = supervisor_factory or (
            lambda on_line: ProcessSupervisor(config, on_line)
        )
        self._transport_factory = transport_factory or (
            lambda: create_transport(config.transport)
        )
        self._list_devices = device_lister
        self._sleep = sleep

        self.parser = OutputParser(config.vocabulary.denylist)
        self.mailbox = Mailbox()

        self._lifecycle_lock = asyncio.Lock()
        self._cancel_event = asyncio.Event()
        self._supervisor: Optional[ProcessSupervisor] = None
        self._transport: Optional[TransportChannel] = None
        self._session: Optional[CaptureSession] = None
        self._capture_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._failure_teardown: Optional[asyncio.Task] = None

    @property
    def state(self) -> PipelineStateEnum:
        return self.state_manager.current_state

    @property
    def last_error(self) -> Optional[str]:
        return self.state_manager.last_error

    @property
    def level(self) -> float:
        """Loudness of the most recent chunk, 0.0 when not streaming."""
        return self._session.level if self._session else 0.0

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def supervisor(self) -> Optional[ProcessSupervisor]:
        return self._supervisor

    @property
    def last_heard(self) -> Optional[TranscriptionEvent]:
        return self.mailbox.last_heard

    def subscribe(
        self,
        on_command: Optional[CommandObserver] = None,
        on_unrecognized: Optional[UnrecognizedObserver] = None,
    ) -> Subscription:
        return self.mapper.subscribe(on_command, on_unrecognized)

    def _on_stdout_line(self, line: str) -> None:
        """Runs on the supervisor's stdout reader task."""
        event = self.parser.feed(line)
        if event is None:
            logger.debug(f"ffmpeg output ignored: {line}")
            return
        logger.info(f"Heard: {event.text!r}")
        self.mailbox.put(event)

    def _select_device(self) -> Optional[str]:
        devices = self._list_devices()
        if not devices:
            raise RuntimeError("No microphones found")
        for name in devices:
            logger.debug(f"Input device: {name}")

        index = self.config.audio.device_index
        if not 0 <= index < len(devices):
            logger.warning(f"Microphone index {index} out of range, using device 0")
            index = 0
        logger.info(f"Using microphone: {devices[index]}")
        return devices[index]

    async def start(self, refresh_preflight: bool = False) -> bool:
        """Start streaming.

        Args:
            refresh_preflight: Re-run the availability checks instead of
                reusing an earlier verdict.

        Returns:
            True if the pipeline is streaming afterwards, False if it is
            disabled or failed to start (see last_error).
        """
        async with self._lifecycle_lock:
            state = self.state
            if state in (PipelineStateEnum.STARTING, PipelineStateEnum.STREAMING):
                logger.info("Notice: pipeline already streaming, ignoring start request")
                return True
            if state == PipelineStateEnum.FAILED:
                logger.warning(
                    f"Pipeline failed ({self.last_error}); restart() is required"
                )
                return False
            if not self.config.audio.enabled:
                logger.info("Speech pipeline disabled in configuration")
                return False

            self.state_manager.set_state(PipelineStateEnum.STARTING)

            available, reason = await asyncio.to_thread(
                self.preflight.check_availability, refresh_preflight
            )
            if not available:
                self.state_manager.set_error(f"Speech recognition unavailable: {reason}")
                return False

            try:
                await self._launch()
            except Exception as e:
                logger.exception("Failed to launch speech pipeline")
                await self._teardown()
                self.state_manager.set_error(f"Launch failed: {e}")
                return False

            self.state_manager.set_state(PipelineStateEnum.STREAMING)
            logger.info("Speech pipeline streaming")
            return True

    async def _launch(self) -> None:
        audio_config = self.config.audio
        self._cancel_event = asyncio.Event()

        device = self._select_device()
        await asyncio.to_thread(
            self.audio_source.start,
            device,
            True,
            audio_config.buffer_seconds,
            audio_config.sample_rate,
        )
        if not await asyncio.to_thread(
            self.audio_source.wait_for_first_samples,
            audio_config.first_sample_timeout_s,
        ):
            logger.warning("Microphone has not delivered samples yet, continuing")

        self._transport = self._transport_factory()
        self._transport.prepare()

        self._supervisor = self._supervisor_factory(self._on_stdout_line)
        handle = await self._supervisor.start(self._transport.input_argument)
        await self._transport.open(handle.process)

        self._session = CaptureSession(
            source=self.audio_source,
            buffer_length=self.audio_source.buffer_length,
            chunk_size=audio_config.chunk_frames,
            cursor=self.audio_source.position,
        )
        capture_loop = CaptureLoop(
            session=self._session,
            transport=self._transport,
            is_alive=lambda: self._supervisor is not None and self._supervisor.is_alive,
            cancel_event=self._cancel_event,
            on_process_death=self._on_process_death,
            tick_interval=self.config.pipeline.tick_interval_s,
            max_chunks_per_tick=self.config.pipeline.max_chunks_per_tick,
            sleep=self._sleep,
        )
        self._capture_task = asyncio.create_task(capture_loop.run())
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())

    def _on_process_death(self) -> None:
        """Called by the capture loop when the recognizer is found dead."""
        self.state_manager.set_error("Recognizer process exited unexpectedly")
        self._cancel_event.set()
        self._failure_teardown = asyncio.create_task(self._teardown())

    async def _dispatch_loop(self) -> None:
        """Drain the mailbox and raise command events while streaming."""
        tick = self.config.pipeline.tick_interval_s
        logger.debug("Dispatch loop started")
        while not self._cancel_event.is_set():
            try:
                for event in self.mailbox.drain():
                    if self.state_manager.is_streaming:
                        self.mapper.handle(event.text)
                    else:
                        logger.debug(f"Not streaming, dropped {event.text!r}")
                await self._sleep(tick)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in dispatch loop: {e}")
                await self._sleep(tick)
        logger.debug("Dispatch loop stopped")

    async def _teardown(self) -> None:
        """Release every owned resource. Each step is isolated; never raises."""
        self._cancel_event.set()

        tasks = [self._capture_task, self._dispatch_task]
        self._capture_task = self._dispatch_task = None
        current = asyncio.current_task()
        for task in tasks:
            if task is None or task is current:
                continue
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Pipeline task ended with error: {e}")

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.error(f"Error closing transport: {e}")

        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None:
            try:
                await supervisor.stop(self.config.pipeline.shutdown_grace_s)
            except Exception as e:
                logger.error(f"Error stopping recognizer: {e}")

        try:
            self.audio_source.stop()
        except Exception as e:
            logger.error(f"Error stopping audio source: {e}")

        self.mailbox.clear()
        self._session = None

    async def stop(self) -> None:
        """Stop streaming and return to IDLE. Idempotent; never raises."""
        async with self._lifecycle_lock:
            failure_teardown, self._failure_teardown = self._failure_teardown, None
            if failure_teardown is not None:
                try:
                    await failure_teardown
                except Exception as e:
                    logger.error(f"Error releasing failed pipeline: {e}")

            if self.state == PipelineStateEnum.IDLE:
                logger.debug("Pipeline already idle")
                return

            logger.info("Stopping speech pipeline")
            self.state_manager.set_state(PipelineStateEnum.STOPPING)
            try:
                await self._teardown()
            except Exception:
                logger.exception("Unexpected error during pipeline teardown")
            finally:
                self.state_manager.set_state(PipelineStateEnum.IDLE)
            logger.info("Speech pipeline stopped")

    async def restart(self) -> bool:
        """Stop (clearing a failure) and start again with fresh checks."""
        await self.stop()
        return await self.start(refresh_preflight=True)

    async def close(self) -> None:
        """Stop and unregister every command subscriber."""
        await self.stop()
        self.mapper.clear()
