import types
import inspect
import logging
import functools
import traceback
from collections.abc import Mapping
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


logger = logging.getLogger(__name__)

PRIMITIVE_TYPES = (bool, int, float, complex, str, bytes, bytearray)


class InvalidArgument(TypeError):
    """Raised by create_proxy() when the target or the options can not be proxied."""
    pass


class ControlSignal(BaseModel):
    """The record a `before` hook returns to short-circuit the proxied call.

    A plain dict with the same keys is accepted as well. Both `return_value` and
    `returnValue` are recognized. Any truthy `cancel` value cancels the call.
    """
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    cancel: bool = False
    return_value: Any = Field(default=None, alias='returnValue')

    @field_validator('cancel', mode='before')
    @classmethod
    def _truthiness(cls, value: Any) -> bool:
        return bool(value)

    @staticmethod
    def from_hook_result(result: Any) -> Optional['ControlSignal']:
        if isinstance(result, ControlSignal):
            return result
        if isinstance(result, Mapping):
            return ControlSignal.model_validate(dict(result))
        return None


class ProxyOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, extra='forbid', frozen=True)

    before: Optional[Callable] = None
    after: Optional[Callable] = None
    context: Any = None


def resolve_options(options: ProxyOptions | Mapping | None = None, **kwargs) -> ProxyOptions:
    """Merges `options` (a ProxyOptions, a dict or None) with keyword overrides.

    Raises:
        InvalidArgument: Unknown field, or a hook which is not callable.
    """
    if options is None:
        fields = {}
    elif isinstance(options, ProxyOptions):
        fields = {name: getattr(options, name) for name in options.model_fields_set}
    elif isinstance(options, Mapping):
        fields = dict(options)
    else:
        raise InvalidArgument(f'Options should be ProxyOptions or dict, got {type(options).__name__}.')
    fields.update(kwargs)

    try:
        return ProxyOptions.model_validate(fields)
    except ValidationError as e:
        raise InvalidArgument(f'Invalid proxy options: {str(e)}') from e


def bind_receiver(func: Callable, receiver: Any) -> Callable:
    """Binds `receiver` as the leading `self` argument of `func`.

    Only plain functions take the receiver. Bound methods, builtins, partials and
    callable instances already carry their own receiver and are returned as is.
    A FunctionProxy gets the receiver as its natural receiver.
    """
    if receiver is None:
        return func
    if isinstance(func, FunctionProxy):
        return func.__get__(receiver, type(receiver))
    if inspect.isfunction(func):
        return types.MethodType(func, receiver)
    return func


METHOD_MEMBER_TYPES = (types.FunctionType, classmethod, staticmethod, types.BuiltinFunctionType,
                       types.MethodDescriptorType, types.WrapperDescriptorType, types.ClassMethodDescriptorType)


def _is_plain_member(static: Any) -> bool:
    """True if reading a class attribute found by `inspect.getattr_static` runs no user code."""
    return isinstance(static, METHOD_MEMBER_TYPES) or not hasattr(type(static), '__get__')


class Proxyable:
    """Mixin giving instances a `create_proxy()` method.

    Usage:
        class Account(Proxyable):
            def deposit(self, amount): ...

        audited = Account().create_proxy(before=lambda self, amount: print(amount))
    """

    def create_proxy(self, options: ProxyOptions | Mapping | None = None, **kwargs):
        return create_proxy(self, options, **kwargs)


class FunctionProxy(Proxyable):
    """Callable wrapper running `before` and `after` hooks around a function.

    Calling the proxy performs, in order:
        1. Resolves the receiver: `context` if given, else the instance the proxy
           was looked up on (descriptor protocol), else none.
        2. Calls `before(*args, **kwargs)`. If it returns a ControlSignal (or a dict)
           with `cancel` set, the function is skipped and `return_value` is the result.
        3. Otherwise calls the function and keeps its result.
        4. Calls `after(*args, **kwargs)`, with the result appended to `args` when the
           function ran and did not return None. `after` also fires on cancellation.
        5. Returns the result.

    When a receiver is active it is passed as the leading argument of every plain
    function among the target and the hooks. Exceptions are never caught.

    The proxy holds no mutable state. Wrapping a proxy nests the hooks:
    outer before, inner before, function, inner after, outer after.

    Attributes:
        __wrapped__ (Callable): The original function.
        options (ProxyOptions): The hooks and context.
    """

    def __init__(self, func: Callable, options: ProxyOptions, bind_func: bool = True):
        functools.update_wrapper(self, func, updated=())
        self._func = func
        # False: only the hooks take the receiver, `func` keeps its own
        self._bind_func = bind_func
        self.options = options

    def __call__(self, *args, **kwargs):
        return self.invoke(None, *args, **kwargs)

    def __get__(self, instance, owner=None):
        if instance is None:
            return self
        return types.MethodType(self.invoke, instance)

    def __repr__(self):
        return f"<Function Proxy {getattr(self._func, '__name__', repr(self._func))}>"

    def invoke(self, receiver: Any, /, *args, **kwargs) -> Any:
        """Runs the hooked call with `receiver` as the natural receiver."""
        before, after, context = self.options.before, self.options.after, self.options.context
        if context is not None:
            receiver = context

        signal = None
        if before is not None:
            signal = ControlSignal.from_hook_result(bind_receiver(before, receiver)(*args, **kwargs))

        if signal is not None and signal.cancel:
            logger.debug(f'Call to {self!r} cancelled by before hook.')
            result = signal.return_value
            after_args = args
        else:
            func = bind_receiver(self._func, receiver) if self._bind_func else self._func
            result = func(*args, **kwargs)
            after_args = args if result is None else args + (result,)

        if after is not None:
            bind_receiver(after, receiver)(*after_args, **kwargs)
        return result


class ObjectProxy:
    """Object wrapper whose public methods are FunctionProxy copies of the target's.

    Reading any other attribute falls back to the target, so the state the original
    methods change stays visible through the proxy. Methods bound to the target are
    re-bound to `context`, which defaults to the target itself. Other callable members
    (static methods, class methods, functions stored on the instance) are called as
    they are, but their hooks still receive the context.

    The target is never modified: descriptors other than functions and method
    wrappers (property, cached_property, ...) are neither evaluated nor intercepted.
    A FunctionProxy defined in the target's class is wrapped as a proxy, so hooks nest.

    Attributes:
        __wrapped__ (object): The original object.
    """

    def __init__(self, target: object, options: ProxyOptions):
        self.__wrapped__ = target

        receiver = options.context if options.context is not None else target
        method_options = options.model_copy(update={'context': receiver})

        for name in dir(target):
            if name.startswith('_'):
                continue
            static = inspect.getattr_static(target, name, None)
            if static is Proxyable.__dict__.get(name):
                continue
            in_instance = name in getattr(target, '__dict__', {})
            if isinstance(static, FunctionProxy) and not in_instance:
                setattr(self, name, FunctionProxy(static, method_options))
                continue
            if not in_instance and not _is_plain_member(static):
                continue
            member = getattr(target, name, None)
            if not callable(member) or inspect.isclass(member):
                continue
            if inspect.ismethod(member) and member.__self__ is target:
                setattr(self, name, FunctionProxy(member.__func__, method_options))
            else:
                setattr(self, name, FunctionProxy(member, method_options, bind_func=False))

    def __getattr__(self, name):
        # Only reached for names missing on the proxy itself
        if name == '__wrapped__':
            raise AttributeError(name)
        return getattr(self.__wrapped__, name)

    def __repr__(self):
        return f'<Object Proxy of {self.__wrapped__!r}>'


def _create_function_proxy(target: Callable, options: ProxyOptions) -> FunctionProxy:
    logger.debug(f"Create function proxy for {getattr(target, '__name__', repr(target))}.")
    return FunctionProxy(target, options)


def _create_object_proxy(target: object, options: ProxyOptions) -> ObjectProxy:
    logger.debug(f'Create object proxy for {type(target).__name__}.')
    return ObjectProxy(target, options)


def create_proxy(target: Any, options: ProxyOptions | Mapping | None = None, **kwargs) -> FunctionProxy | ObjectProxy:
    """
    Wraps a callable, or every public method of an object, with before/after hooks.

    Args:
        target: The callable or object to proxy. It is never modified.
        options: ProxyOptions or dict with optional `before`, `after` and `context`.
        **kwargs: Override fields of `options`.

    Returns:
        FunctionProxy if `target` is callable, otherwise ObjectProxy.

    Raises:
        InvalidArgument: `target` is None or a primitive value, or options are invalid.

    Example:
        proxy = create_proxy(lambda: 45, before=lambda: {'cancel': True, 'return_value': 23})
        proxy()     # 23

        # The signal keys follow either spelling, 'returnValue' works the same way
        proxy = create_proxy(lambda: 45, before=lambda: ControlSignal(cancel=True, returnValue=23))
        proxy()     # 23
    """
    if target is None or isinstance(target, PRIMITIVE_TYPES):
        raise InvalidArgument(f'Can not create proxy for {target!r}: expect a callable or an object.')

    resolved = resolve_options(options, **kwargs)
    if callable(target):
        return _create_function_proxy(target, resolved)
    return _create_object_proxy(target, resolved)


def intercept(options: ProxyOptions | Mapping | None = None, **kwargs) -> Callable[[Callable], FunctionProxy]:
    """Decorator form of create_proxy().

    Usage:
        class Counter:
            @intercept(before=lambda self, step: print(f'Add {step}'))
            def add(self, step):
                self.value += step
    """
    def decorator(func: Callable) -> FunctionProxy:
        return create_proxy(func, options, **kwargs)
    return decorator


# ----------------------------------------------------------------------------------------------------------------------

class Counter(Proxyable):
    def __init__(self):
        self.value = 0

    def add(self, step):
        self.value += step
        return self.value


def _log_before(counter, step):
    print(f'before: {counter.value} + {step}')


def _log_after(counter, step, result=None):
    print(f'after: {result}')


def main():
    counter = Counter()
    proxy = counter.create_proxy(before=_log_before, after=_log_after)
    proxy.add(1)
    proxy.add(2)
    print(f'Counter value: {counter.value}')

    guarded = create_proxy(counter.add, before=lambda step: {'cancel': step < 0, 'returnValue': counter.value})
    print(f'Negative step rejected: {guarded(-5)}')


# ----------------------------------------------------------------------------------------------------------------------

if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        print('Error =>', e)
        print('Error =>', traceback.format_exc())
        exit()
    finally:
        pass
