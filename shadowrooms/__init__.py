"""
shadowrooms
~~~~~~~~~~~

阅后即焚的密码聊天室服务：房间在最后一位参与者离开并经过宽限期后
自动归档（转录加密保存）并从内存中驱逐。
"""

__version__ = "0.1.0"
