"""
Automation Workflow Engine 命令行主入口
"""
from dotenv import load_dotenv

# 加载环境变量
load_dotenv()

# 导入命令行
from src.automation_engine.cli import main


if __name__ == "__main__":
    main()
