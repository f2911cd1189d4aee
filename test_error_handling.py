#!/usr/bin/env python3
"""
错误处理测试 - 预定义错误、异常转换、最近记录和回调隔离
"""
import logging

from xray_tunnel.core.error_handler import (
    ERROR_DEFINITIONS,
    ErrorCategory,
    ErrorHandler,
    ErrorInfo,
    ErrorSeverity,
)
from xray_tunnel.core.errors import NetworkError, ParseError


def test_predefined_errors_use_definitions():
    """已定义的错误代码使用预设的严重程度和消息"""
    print("Testing predefined error definitions...")
    handler = ErrorHandler()

    test_cases = [
        {
            'category': ErrorCategory.SUBSCRIPTION,
            'code': 'subscription_fetch_failed',
            'details': 'HTTP error: 503',
            'context': {'group_id': 'g1', 'failures': 1},
        },
        {
            'category': ErrorCategory.ROUTING,
            'code': 'routing_update_failed',
            'details': 'Checksum mismatch for routing file geoip.dat',
        },
        {
            'category': ErrorCategory.SCHEDULER,
            'code': 'scheduler_job_failed',
            'message': 'Job ping_sweep failed',
        },
        {
            'category': ErrorCategory.TUNNEL,
            'code': 'tunnel_stop_failed',
        },
    ]

    for case in test_cases:
        info = handler.handle_error(**case)
        severity, default_message = ERROR_DEFINITIONS[case['code']]
        assert isinstance(info, ErrorInfo)
        assert info.category == case['category']
        assert info.severity == severity
        assert info.message == case.get('message', default_message)
        assert info.details == case.get('details')
        print(f"  ✓ {case['code']}")

    assert len(handler.recent_errors()) == len(test_cases)


def test_unknown_code_defaults_to_error():
    handler = ErrorHandler()
    info = handler.handle_error(ErrorCategory.UNKNOWN, 'something_odd')
    assert info.severity == ErrorSeverity.ERROR
    assert info.message == "未知错误"


def test_handle_exception_builds_code(caplog):
    handler = ErrorHandler()
    with caplog.at_level(logging.WARNING, logger="xray_tunnel.core.error_handler"):
        info = handler.handle_exception(ErrorCategory.PROTOCOL_PARSING,
                                        ParseError("Missing password", "trojan://@host"))
    assert info.code == "protocol_parsing_parseerror"
    assert info.severity == ErrorSeverity.WARNING
    assert "ParseError: Missing password" in info.details
    assert "protocol_parsing_parseerror" in caplog.text

    info = handler.handle_exception(ErrorCategory.SUBSCRIPTION, NetworkError("timeout"),
                                    context={'url': 'https://example.com'})
    assert info.code == "subscription_networkerror"
    assert info.context == {'url': 'https://example.com'}


def test_recent_errors_are_bounded():
    handler = ErrorHandler(max_history=3)
    for i in range(5):
        handler.handle_error(ErrorCategory.LATENCY_TEST, 'latency_test_probe_error', message=f"probe {i}")
    assert [e.message for e in handler.recent_errors()] == ["probe 2", "probe 3", "probe 4"]

    handler.handle_error(ErrorCategory.ROUTING, 'routing_update_failed', details="404")
    assert len(handler.recent_errors(category=ErrorCategory.ROUTING)) == 1
    assert [e.message for e in handler.recent_errors(limit=2)][0] == "probe 4"

    stats = handler.get_error_statistics()
    assert stats['total_errors'] == 3
    assert stats['by_category'] == {'latency_test': 2, 'routing': 1}
    assert stats['last_error']['code'] == 'routing_update_failed'
    assert stats['last_error']['details'] == "404"


def test_statistics_when_empty():
    stats = ErrorHandler().get_error_statistics()
    assert stats == {'total_errors': 0, 'by_category': {}, 'last_error': None}


def test_failing_callback_does_not_propagate():
    """回调抛出异常不影响其他回调和错误处理"""
    handler = ErrorHandler()
    received = []

    def broken_callback(info):
        raise RuntimeError("callback bug")

    handler.register_error_callback(ErrorCategory.SUBSCRIPTION, broken_callback)
    handler.register_error_callback(ErrorCategory.SUBSCRIPTION, received.append)

    info = handler.handle_error(ErrorCategory.SUBSCRIPTION, 'subscription_stale')
    assert received == [info]

    # 其他类别不触发
    handler.handle_error(ErrorCategory.ROUTING, 'routing_update_failed')
    assert len(received) == 1


def test_error_info_serialization():
    info = ErrorInfo(
        category=ErrorCategory.STORE,
        severity=ErrorSeverity.CRITICAL,
        code='store_file_corrupted',
        message='数据文件已损坏',
        details='servers.json',
    )
    data = info.to_dict()
    assert data['category'] == 'store'
    assert data['severity'] == 'critical'
    assert data['details'] == 'servers.json'
    assert data['timestamp'] is not None


if __name__ == "__main__":
    test_predefined_errors_use_definitions()
    test_unknown_code_defaults_to_error()
    test_recent_errors_are_bounded()
    test_statistics_when_empty()
    test_failing_callback_does_not_propagate()
    test_error_info_serialization()
    print("✓ All error handling tests passed")
