"""
自定义异常类
用于在应用的不同层之间传递具有明确语义的错误信息。
配额耗尽不是异常，而是升级提示 (见 AppState.upgrade_prompt)。
"""

class PersistenceError(Exception):
    """当数据库拒绝或未能完成读写时发生错误"""
    pass

class NotFoundError(Exception):
    """目标记录（通常是项目）在服务端已不存在"""
    pass

class ProviderError(Exception):
    """当与大语言模型交互（传输或解析）时发生错误"""
    pass

class ConfigurationError(Exception):
    """当应用配置不正确或缺失时发生错误"""
    pass

class ExportError(Exception):
    """导出文档失败"""
    pass
