"""领域层模型与协议。

包含：
- models: Message / ValidatedQueryRequest / ValidatedResponse / RequestContext。
- exceptions: 业务异常类型与错误码。
- envelopes: 错误信封的序列化模型。
"""
