'''
    flask_tokenguard
    ----------------

    A Flask extension implementing the synchronizer token pattern against
    cross-site request forgery (CSRF), with strict same-origin checking of
    the Referer header for secure requests.

    :copyright: (c) 2026 by the Flask-TokenGuard authors.
    :license: BSD, see LICENSE for more details.
'''

__version_info__ = ('0', '1', '0')
__version__ = '.'.join(__version_info__)
__license__ = 'BSD'
__all__ = ['TokenGuard', 'CSRFEngine', 'CSRFConfig', 'ExemptionRegistry',
           'RequestContext', 'TokenStore', 'CSRFError', 'ConfigurationError',
           'BadPatternError']

import base64
import hmac
import logging
import re
import secrets
import threading

from collections import namedtuple
from urllib.parse import urlsplit

from flask import current_app, flash, g, redirect, request, session
from werkzeug.exceptions import Forbidden


log = logging.getLogger(__name__)

# These names are shared with client-side scripts and must not change.
FIELD_NAME = 'csrf_token'
HEADER_NAME = 'X-CSRF-Token'
SESSION_KEY = 'csrf_token'

DEFAULT_TOKEN_LENGTH = 32
MIN_TOKEN_LENGTH = 32
MAX_TOKEN_LENGTH = 512

REASON_NO_REFERER = ('A secure request contained no Referer or its value '
                     'was malformed!')
REASON_BAD_REFERER = 'Same-origin policy failure!'
REASON_BAD_TOKEN = 'Tokens mismatch!'

_SAFE_METHOD_RE = re.compile(r'\A(?:GET|HEAD|OPTIONS|TRACE)\Z')


class ConfigurationError(Exception):
    '''Raised when CSRF protection cannot be set up safely. The application
    must not start serving requests when this is raised.'''


class BadPatternError(ConfigurationError):
    '''Raised when an exemption glob pattern is malformed.'''


class CSRFError(Forbidden):
    '''Raised when a request fails CSRF validation and no forbidden redirect
    is configured. The failure reason is carried as the description.

    Register a handler with :meth:`flask.Flask.errorhandler` to customize
    the response.
    '''


def generate_token(raw_length):
    '''Generates a token from `raw_length` bytes of the OS's CSPRNG, encoded
    as standard padded base64. Returns a string.'''
    return base64.b64encode(secrets.token_bytes(raw_length)).decode('ascii')


def encoded_length(raw_length):
    '''Length of a token generated from `raw_length` random bytes.'''
    return (raw_length + 2) // 3 * 4


def check_token_length(raw_length):
    '''Raises :class:`ConfigurationError` unless `raw_length` is an integer
    within [32, 512].'''
    if (isinstance(raw_length, bool) or not isinstance(raw_length, int) or
            not MIN_TOKEN_LENGTH <= raw_length <= MAX_TOKEN_LENGTH):
        raise ConfigurationError(
            'CSRF_TOKEN_LENGTH=%r: expected a length in [%d..%d]'
            % (raw_length, MIN_TOKEN_LENGTH, MAX_TOKEN_LENGTH))


def check_random_source():
    '''Makes sure a cryptographically secure random source is available.'''
    try:
        secrets.token_bytes(1)
    except (NotImplementedError, OSError) as e:
        raise ConfigurationError(
            'No cryptographically secure random source: %r' % (e,))


def compare_token(sent_token, token):
    '''Compares two tokens in constant time. Tokens of different lengths
    never match; length is not secret so it is checked first.'''
    if sent_token is None or token is None:
        return False
    sent, real = sent_token.encode('utf-8'), token.encode('utf-8')
    if len(sent) != len(real):
        return False
    return hmac.compare_digest(sent, real)


def _parse_url(url):
    '''Splits `url`, returning None when it is empty or malformed.'''
    if not url:
        return None
    try:
        parts = urlsplit(url)
        # Accessing the port validates it.
        parts.port
    except ValueError:
        return None
    return parts


def same_origin(url1, url2):
    '''Determine if two URLs share the same origin.'''
    p1, p2 = _parse_url(url1), _parse_url(url2)
    if p1 is None or p2 is None:
        return False
    origin1 = p1.scheme, p1.hostname, p1.port
    origin2 = p2.scheme, p2.hostname, p2.port
    return origin1 == origin2


def is_safe_method(method):
    '''True for methods which must not change server state: GET, HEAD,
    OPTIONS and TRACE. The match is case-sensitive.'''
    return _SAFE_METHOD_RE.match(method or '') is not None


def _glob_class_char(pattern, i):
    if i >= len(pattern):
        raise BadPatternError('unterminated character class: %r' % pattern)
    c = pattern[i]
    if c in '-]':
        raise BadPatternError('unescaped %r in character class: %r'
                              % (c, pattern))
    if c == '\\':
        i += 1
        if i >= len(pattern):
            raise BadPatternError('trailing escape: %r' % pattern)
        c = pattern[i]
    return c, i + 1


def _glob_class(pattern, i):
    negate = i < len(pattern) and pattern[i] == '^'
    if negate:
        i += 1
    ranges = []
    while True:
        if i < len(pattern) and pattern[i] == ']' and ranges:
            i += 1
            break
        lo, i = _glob_class_char(pattern, i)
        hi = lo
        if i < len(pattern) and pattern[i] == '-':
            hi, i = _glob_class_char(pattern, i + 1)
            if hi < lo:
                raise BadPatternError('bad range %s-%s: %r'
                                      % (lo, hi, pattern))
        ranges.append((lo, hi))

    body = ''.join(re.escape(lo) if lo == hi
                   else '%s-%s' % (re.escape(lo), re.escape(hi))
                   for lo, hi in ranges)
    # A negated class must not match the separator either.
    return '[%s%s]' % ('^/' if negate else '', body), i


class Glob(object):
    '''A shell glob matched against a whole path.

    ``*`` matches any run of characters except ``/``, ``?`` matches one
    character except ``/``, ``[...]`` is a character class (``[^...]``
    negated) and ``\\`` escapes the following character.

    The pattern is split into chunks, each a fixed-width regular expression
    optionally preceded by a star. Chunks are matched leftmost-first and a
    star only ever rescans its own chunk, so matching takes time linear in
    the path length for each star.
    '''

    def __init__(self, pattern, chunks):
        self.pattern = pattern
        self.chunks = chunks

    def match(self, name):
        pos = 0
        for index, (star, chunk) in enumerate(self.chunks):
            last = index == len(self.chunks) - 1
            if star and not chunk.pattern:
                # Trailing star: the rest must stay within one segment.
                return '/' not in name[pos:]

            m = chunk.match(name, pos)
            if m is not None and (not last or m.end() == len(name)):
                pos = m.end()
                continue

            if star:
                end = None
                i = pos
                while i < len(name) and name[i] != '/':
                    m = chunk.match(name, i + 1)
                    if m is not None and (not last or m.end() == len(name)):
                        end = m.end()
                        break
                    i += 1
                if end is not None:
                    pos = end
                    continue
            return False
        return pos == len(name)


def compile_glob(pattern):
    '''Compiles a shell glob into a :class:`Glob`.

    :param pattern: The glob pattern.
    :raises BadPatternError: If the pattern is malformed.
    '''
    chunks = []
    star = False
    parts = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        i += 1
        if c == '*':
            if parts:
                chunks.append((star, re.compile(''.join(parts))))
                parts = []
            star = True
        elif c == '?':
            parts.append('[^/]')
        elif c == '[':
            part, i = _glob_class(pattern, i)
            parts.append(part)
        elif c == '\\':
            if i >= len(pattern):
                raise BadPatternError('trailing escape: %r' % pattern)
            parts.append(re.escape(pattern[i]))
            i += 1
        else:
            parts.append(re.escape(c))
    if parts or star:
        chunks.append((star, re.compile(''.join(parts))))
    return Glob(pattern, chunks)


_Exemptions = namedtuple('_Exemptions', 'paths actions globs')


class ExemptionRegistry(object):
    '''Requests which bypass CSRF validation, by exact path, by action (a
    ``'Controller.Action'`` name, i.e. a blueprint endpoint) or by glob
    pattern.

    Registrations are serialized and publish a new immutable snapshot, so
    lookups never need a lock and may run concurrently with late
    registrations.

    :param parent: Another registry whose exemptions also apply.
    '''

    def __init__(self, parent=None):
        self._lock = threading.Lock()
        self._exemptions = _Exemptions(frozenset(), frozenset(), ())
        self.parent = parent

    def add_path(self, path):
        '''Exempts an exact path. Paths are matched case-insensitively and
        must start with ``/``; anything else is ignored.'''
        if not path.startswith('/'):
            return
        log.info('Adding CSRF exemption for path %r', path)
        with self._lock:
            current = self._exemptions
            self._exemptions = current._replace(
                paths=current.paths | {path.lower()})

    def add_paths(self, *paths):
        for path in paths:
            self.add_path(path)

    def add_action(self, action):
        '''Exempts an action of the form ``'Controller.Action'``. Names
        without exactly two non-empty segments are ignored.'''
        parts = action.split('.')
        if len(parts) != 2 or not all(parts):
            return
        log.info('Adding CSRF exemption for action %r', action)
        with self._lock:
            current = self._exemptions
            self._exemptions = current._replace(
                actions=current.actions | {action})

    def add_actions(self, *actions):
        for action in actions:
            self.add_action(action)

    def add_glob(self, pattern):
        '''Exempts every path matching the glob `pattern`.

        :raises BadPatternError: If the pattern is malformed. Nothing is
            registered in that case.
        '''
        glob = compile_glob(pattern)
        log.info('Adding CSRF exemption for glob %r', pattern)
        with self._lock:
            current = self._exemptions
            if any(other.pattern == pattern for other in current.globs):
                return
            self._exemptions = current._replace(
                globs=current.globs + (glob,))

    def add_globs(self, *patterns):
        for pattern in patterns:
            self.add_glob(pattern)

    def is_exempt(self, path, action=None):
        '''Returns True if the request for `path`, dispatched to `action`,
        is exempt from CSRF validation.'''
        exemptions = self._exemptions
        if path is not None and path.lower() in exemptions.paths:
            return True
        if action and action in exemptions.actions:
            return True
        if path is not None:
            for glob in exemptions.globs:
                if glob.match(path):
                    return True
        if self.parent is not None:
            return self.parent.is_exempt(path, action)
        return False


class TokenStore(object):
    '''Reads and writes the CSRF token kept in a session mapping.'''

    def __init__(self, key=SESSION_KEY):
        self.key = key

    def get(self, session):
        return session.get(self.key)

    def set(self, session, token):
        session[self.key] = token


class CSRFConfig(namedtuple('CSRFConfig', [
        'token_length', 'ajax', 'forbidden_redirect',
        'err_no_referer', 'err_bad_referer', 'err_bad_token'])):
    '''Resolved, immutable CSRF settings.

    ``token_length``
        Number of random bytes in a token, within [32, 512].
    ``ajax``
        Accept the token from the ``X-CSRF-Token`` header.
    ``forbidden_redirect``
        Where to redirect rejected requests, flashing the reason. Empty
        means respond with 403 Forbidden instead.
    ``err_no_referer``, ``err_bad_referer``, ``err_bad_token``
        Reasons given to the client for each kind of failure.
    '''

    __slots__ = ()

    @classmethod
    def from_mapping(cls, config):
        '''Builds the settings from a Flask-style config mapping.

        :raises ConfigurationError: If the token length is out of range or
            ``CSRF_AJAX`` is not a boolean.
        '''
        token_length = config.get('CSRF_TOKEN_LENGTH', DEFAULT_TOKEN_LENGTH)
        check_token_length(token_length)
        ajax = config.get('CSRF_AJAX', False)
        if not isinstance(ajax, bool):
            raise ConfigurationError('CSRF_AJAX=%r: expected True or False'
                                     % (ajax,))
        return cls(
            token_length=token_length,
            ajax=ajax,
            forbidden_redirect=config.get('CSRF_FORBIDDEN_REDIRECT') or '',
            err_no_referer=(config.get('CSRF_ERR_NO_REFERER') or
                            REASON_NO_REFERER),
            err_bad_referer=(config.get('CSRF_ERR_BAD_REFERER') or
                             REASON_BAD_REFERER),
            err_bad_token=(config.get('CSRF_ERR_BAD_TOKEN') or
                           REASON_BAD_TOKEN),
        )


RequestContext = namedtuple('RequestContext', [
    'method', 'url', 'path', 'referer', 'header_token', 'form_token',
    'action'])


class CSRFEngine(object):
    '''Framework-independent CSRF decision logic.

    A request is first given a token bound to its session with
    :meth:`resolve_token`, then judged with :meth:`validate`, which returns
    None to let it through or the reason it must be rejected.

    :param config: A :class:`CSRFConfig`.
    :param registry: The :class:`ExemptionRegistry` to consult.
    :param store: The :class:`TokenStore` used to reach the session.
    :param logger: Logger for security events.
    '''

    def __init__(self, config, registry=None, store=None, logger=None):
        check_token_length(config.token_length)
        self.config = config
        self.registry = registry if registry is not None \
            else ExemptionRegistry()
        self.store = store if store is not None else TokenStore()
        self.logger = logger if logger is not None else log
        self.expected_length = encoded_length(config.token_length)

    def new_token(self, session):
        '''Generates a token and binds it to `session`.'''
        token = generate_token(self.config.token_length)
        self.store.set(session, token)
        self.logger.info('Generated a new CSRF token.')
        return token

    def resolve_token(self, session):
        '''Returns the session's token, replacing it first if it is missing
        or does not have the expected length.'''
        token = self.store.get(session)
        if token is None:
            return self.new_token(session)
        if not isinstance(token, str) or len(token) != self.expected_length:
            # Tampered with, left over from another token length, or from a
            # new session: start over, the mismatch is caught on validation.
            self.logger.warning(
                'Bad CSRF token in session: expected length %d.',
                self.expected_length)
            return self.new_token(session)
        return token

    def sent_token(self, ctx):
        '''The token the client sent back, or an empty string.'''
        sent = ''
        if self.config.ajax:
            sent = ctx.header_token or ''
        if not sent:
            sent = ctx.form_token or ''
        return sent

    def validate(self, ctx, token):
        '''Decides whether the request described by `ctx` may proceed.

        :param ctx: The :class:`RequestContext` of the request.
        :param token: The token resolved for the request's session.
        :returns: None if the request is allowed, otherwise the reason for
            rejecting it.
        '''
        if is_safe_method(ctx.method):
            return None

        if self.registry.is_exempt(ctx.path, ctx.action):
            self.logger.info('Ignoring exempted request %s %s',
                             ctx.method, ctx.path)
            return None

        if urlsplit(ctx.url).scheme == 'https':
            if _parse_url(ctx.referer) is None:
                return self.config.err_no_referer
            if not same_origin(ctx.referer, ctx.url):
                return self.config.err_bad_referer

        if not compare_token(self.sent_token(ctx), token):
            return self.config.err_bad_token

        self.logger.debug('CSRF token checked for %s %s',
                          ctx.method, ctx.path)
        return None


class TokenGuard(object):
    '''Flask extension binding :class:`CSRFEngine` to every request.

    You might initialize :class:`TokenGuard` something like this::

        csrf = TokenGuard(app)

    Every request whose method is not GET, HEAD, OPTIONS or TRACE must then
    send back the token bound to its session, usually as a hidden form
    field. The token is available to templates as ``csrf_token``::

        <form method="POST">
        ...
        <input type="hidden" name="csrf_token" value="{{ csrf_token }}">
        </form>

    With ``CSRF_AJAX`` enabled the token is also accepted from the
    ``X-CSRF-Token`` header, and echoed in that header on every response.

    Secure requests must in addition carry a Referer with the same origin as
    the request.

    .. admonition:: Exempting Requests From Validation

        Use :meth:`exempt_paths`, :meth:`exempt_actions` and
        :meth:`exempt_globs`, or the ``CSRF_EXEMPT_PATHS``,
        ``CSRF_EXEMPT_ACTIONS`` and ``CSRF_EXEMPT_GLOBS`` settings, while
        setting up the application. Settings apply to one application,
        exemptions registered on the extension apply to all of them.

    :param app: The Flask application object, defaults to None.
    '''

    def __init__(self, app=None):
        self.registry = ExemptionRegistry()

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        '''Validates the CSRF settings of `app`, binds validation to
        `app.before_request` and exposes ``csrf_token`` to templates.

        Each application gets its own settings and its own exemptions from
        its ``CSRF_EXEMPT_*`` settings. Exemptions registered on the
        extension itself apply to every application it protects.

        :param app: The Flask application object.
        :raises ConfigurationError: If the settings are unsafe or no secure
            random source is available.
        '''

        config = CSRFConfig.from_mapping(app.config)
        check_random_source()

        registry = ExemptionRegistry(parent=self.registry)
        registry.add_paths(*app.config.get('CSRF_EXEMPT_PATHS', ()))
        registry.add_actions(*app.config.get('CSRF_EXEMPT_ACTIONS', ()))
        registry.add_globs(*app.config.get('CSRF_EXEMPT_GLOBS', ()))

        app.extensions['tokenguard'] = CSRFEngine(config, registry,
                                                  logger=app.logger)

        app.before_request(self._before_request)
        app.after_request(self._after_request)
        app.context_processor(self._context_processor)

    @property
    def engine(self):
        '''The :class:`CSRFEngine` of the current application.'''
        return current_app.extensions['tokenguard']

    @property
    def config(self):
        '''The :class:`CSRFConfig` of the current application.'''
        return self.engine.config

    def exempt_paths(self, *paths):
        '''Exempts exact paths, e.g. ``csrf.exempt_paths('/hooks/github')``.'''
        self.registry.add_paths(*paths)

    def exempt_actions(self, *actions):
        '''Exempts blueprint endpoints, e.g. ``csrf.exempt_actions('api.ping')``.'''
        self.registry.add_actions(*actions)

    def exempt_globs(self, *patterns):
        '''Exempts paths matching glob patterns, e.g.
        ``csrf.exempt_globs('/api/*')``.'''
        self.registry.add_globs(*patterns)

    def _before_request(self):
        '''Resolves the session's token and rejects the request if it fails
        validation. Bound to the Flask `before_request` decorator.'''

        engine = self.engine
        token = engine.resolve_token(session)
        setattr(g, FIELD_NAME, token)

        ctx = RequestContext(
            method=request.method,
            url=request.url,
            path=request.path,
            referer=request.headers.get('Referer', ''),
            header_token=request.headers.get(HEADER_NAME, ''),
            form_token=request.values.get(FIELD_NAME, ''),
            action=request.endpoint or '',
        )
        reason = engine.validate(ctx, token)
        if reason is None:
            return None

        current_app.logger.warning('Forbidden (%s): %s', reason, request.path)
        return self._reject(engine.config, reason)

    def _reject(self, config, reason):
        if config.forbidden_redirect:
            flash(reason, 'error')
            return redirect(config.forbidden_redirect)
        raise CSRFError(reason)

    def _after_request(self, response):
        token = self.get_token()
        if self.config.ajax and token is not None:
            response.headers[HEADER_NAME] = token
        return response

    def _context_processor(self):
        return {FIELD_NAME: self.get_token()}

    def get_token(self):
        '''Returns the token of the current request, if any.'''
        return getattr(g, FIELD_NAME, None)

    def generate_new_token(self):
        '''Replaces the session's token, e.g. after the user logs in, and
        returns the new one.'''
        token = self.engine.new_token(session)
        setattr(g, FIELD_NAME, token)
        return token
