"""预算映射规则表（YAML）"""
