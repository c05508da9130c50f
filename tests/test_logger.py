import io
import json

import pytest

from authcore.logger import AuthLogger
from authcore.logger_helper import debug, error, info


@pytest.mark.asyncio
async def test_text_format():
    stream = io.StringIO()
    logger = AuthLogger(level='INFO', log_format='text', stream=stream)

    await logger.log('warning', 'Rate limit exceeded', component='engine', policy='login', count=3)

    assert stream.getvalue().strip() == '[WARNING] [engine] Rate limit exceeded (policy=login count=3)'


@pytest.mark.asyncio
async def test_json_format():
    stream = io.StringIO()
    logger = AuthLogger(level='INFO', log_format='json', stream=stream)

    await logger.log('error', 'boom', component='audit', kids=['a', 'b'], obj=object())

    event = json.loads(stream.getvalue())
    assert event['level'] == 'ERROR'
    assert event['message'] == 'boom'
    assert event['component'] == 'audit'
    assert event['context']['kids'] == ['a', 'b']
    assert isinstance(event['context']['obj'], str)


@pytest.mark.asyncio
async def test_level_filtering():
    stream = io.StringIO()
    logger = AuthLogger(level='WARNING', stream=stream)

    await logger.log('info', 'hidden')
    await logger.log('debug', 'hidden too')
    await logger.log('error', 'shown')

    assert stream.getvalue().strip() == '[ERROR] shown'


@pytest.mark.asyncio
async def test_unknown_level_falls_back_to_info():
    stream = io.StringIO()
    logger = AuthLogger(level='INFO', stream=stream)
    await logger.log('verbose', 'msg')
    assert stream.getvalue().startswith('[INFO]')


@pytest.mark.asyncio
async def test_helper_without_logger(capsys):
    """Тест: без логгера helper пишет в stderr, debug пропускается."""
    await debug(None, 'quiet')
    await info(None, 'hello', component='x')

    captured = capsys.readouterr()
    assert 'quiet' not in captured.err
    assert '[INFO] hello' in captured.err


@pytest.mark.asyncio
async def test_helper_survives_broken_logger(capsys):
    class BrokenLogger:
        async def log(self, level, message, **context):
            raise RuntimeError('disk full')

    await error(BrokenLogger(), 'important')

    captured = capsys.readouterr()
    assert 'logger failure' in captured.err
    assert '[ERROR] important' in captured.err
