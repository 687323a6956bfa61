"""Interpreter for stored command bodies.

A body is plain text with ``{action arg ...}`` blocks. Each block calls one
registry action and its result replaces the block in the output. Arguments
may use ``$$`` (all call arguments as one), ``$user`` (the caller) and
``$0``, ``$1``... (positional call arguments).

Blocks are flat: the first ``}`` after a ``{`` closes it.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple, Union

logger = logging.getLogger(__name__)


class ExecutionError(RuntimeError):
    pass


class UnterminatedBlockError(ExecutionError):
    def __init__(self, position: int):
        super().__init__(f'unterminated action block at position {position}')
        self.position = position


class MissingArgumentError(ExecutionError):
    def __init__(self, index: int):
        super().__init__(f'missing argument index {index}')
        self.index = index


class InvalidVariableError(ExecutionError):
    def __init__(self, token: str):
        super().__init__('invalid variable')
        self.token = token


class UnknownActionError(ExecutionError):
    def __init__(self, name: str):
        super().__init__(f'unknown action {name}')
        self.name = name


@dataclass(frozen=True)
class ActionInvocation:
    name: str
    args: Tuple[str, ...]


@dataclass(frozen=True)
class Block:
    tokens: Tuple[str, ...]
    position: int


Segment = Union[str, Block]


class ActionInvoker(Protocol):
    async def invoke(self, name: str, args: Sequence[str], channel: str) -> Optional[str]: ...


def parse_body(body: str) -> List[Segment]:
    segments: List[Segment] = []
    text: List[str] = []
    pos = 0
    while pos < len(body):
        start = body.find('{', pos)
        if start < 0:
            text.append(body[pos:])
            break
        text.append(body[pos:start])
        end = body.find('}', start + 1)
        if end < 0:
            raise UnterminatedBlockError(start)
        if text:
            segments.append(''.join(text))
            text = []
        tokens = tuple(body[start + 1:end].split())
        if not tokens:
            raise ExecutionError(f'empty action block at position {start}')
        segments.append(Block(tokens, start))
        pos = end + 1
    literal = ''.join(text)
    if literal:
        segments.append(literal)
    return [segment for segment in segments if segment != '']


def resolve_variable(token: str, call_args: Sequence[str], caller: str) -> str:
    var = token[1:]
    if var == '$':
        return ' '.join(call_args)
    if var == 'user':
        return caller
    # ASCII digits only; isdigit() alone also matches superscripts.
    if var.isascii() and var.isdigit():
        index = int(var)
        if index >= len(call_args):
            raise MissingArgumentError(index)
        return call_args[index]
    raise InvalidVariableError(token)


def resolve_block(block: Block, call_args: Sequence[str], caller: str) -> ActionInvocation:
    name, *raw_args = block.tokens
    args = [
        resolve_variable(arg, call_args, caller) if arg.startswith('$') else arg
        for arg in raw_args
    ]
    return ActionInvocation(name, tuple(args))


class ScriptInterpreter:
    def __init__(self, registry: ActionInvoker):
        self.registry = registry

    def compile(self, body: str, call_args: Sequence[str], caller: str) -> List[Union[str, ActionInvocation]]:
        """Parse ``body`` and resolve every block against the call.

        Raises before anything runs, so a bad body never causes a partial
        set of side effects.
        """
        program: List[Union[str, ActionInvocation]] = []
        for segment in parse_body(body):
            if isinstance(segment, Block):
                program.append(resolve_block(segment, call_args, caller))
            else:
                program.append(segment)
        return program

    async def interpret(
        self,
        body: str,
        call_args: Sequence[str],
        caller: str,
        channel: str,
    ) -> Optional[str]:
        program = self.compile(body, call_args, caller)
        output: List[str] = []
        for step in program:
            if isinstance(step, ActionInvocation):
                logger.debug('executing action %s with arguments %s', step.name, list(step.args))
                result = await self.registry.invoke(step.name, step.args, channel)
                if result:
                    output.append(result)
            else:
                output.append(step)
        text = ''.join(output)
        return text or None
