"""通知标题/正文模板

模板是数据而不是逻辑: 新增事件类型只需要在这里加一项, 不需要改动队列或通道。
占位符使用 str.format 语法, 缺失字段渲染为空; `:date` / `:time` 会格式化为
"05 Mar 2026" / "2:05 PM"。
推送模板上下文: data (业务数据), event (原始事件体);
提醒模板上下文: payload (调度器附带的数据), kind, scheduled (计划时间 HH:MM)。
"""

# 推送事件: 事件名 -> {title, variant_field, body{variant: template}}
# variant_field 指定 event 中用于选择正文变体的字段, 找不到时使用 "default"
PUSH_TEMPLATES: dict[str, dict] = {
    "new-request-notification": {
        "title": "🔔 New Request",
        "variant_field": "type",
        "body": {
            "leave": (
                "{data[employee_name]} requested {data[leaveType]}\n"
                "{data[numberOfDays]} day(s) from {data[fromDate]:date}\n\n"
                "Reason: {data[reason]}"
            ),
            "permission": (
                "{data[employee_name]} requested permission\n"
                "{data[duration]} minutes on {data[permissionDate]:date}\n"
                "{data[fromTime]:time} - {data[toTime]:time}\n\n"
                "Reason: {data[reason]}"
            ),
            "default": "{data[employee_name]} submitted a new request",
        },
    },
    "new-meeting-notification": {
        "title": "📅 New Meeting",
        "body": {
            "default": (
                "{data[organizer_name]} scheduled a meeting\n"
                "{data[meetingTitle]}\n"
                "{data[meetingDate]:date} at {data[fromTime]:time}"
            ),
        },
    },
    "new-task-notification": {
        "title": "🎯 New Task Assigned",
        "body": {
            "default": (
                "Task: {data[taskName]}\n"
                "Project: {data[projectName]}\n"
                "Company: {data[companyName]}\n"
                "Start Date: {data[startDate]:date}\n\n"
                "Assigned by: {data[assignedBy]}"
            ),
        },
    },
    "task-updated-notification": {
        "title": "Task Updated",
        "body": {
            "default": (
                "Task: {data[taskName]}\n"
                "Project: {data[projectName]}\n"
                "Company: {data[companyName]}\n"
                "Updated by: {data[updatedBy]}"
            ),
        },
    },
    "request-approved": {
        "title": "✅ Request Approved!",
        "variant_field": "type",
        "body": {
            "leave": (
                "Your {data[leaveType]} request has been approved!\n"
                "{data[numberOfDays]} day(s) from {data[fromDate]:date}\n\n"
                "Approved by: {data[approvedBy]}"
            ),
            "permission": (
                "Your Permission request has been approved!\n"
                "{data[duration]} minutes on {data[permissionDate]:date}\n"
                "{data[fromTime]:time} - {data[toTime]:time}\n\n"
                "Approved by: {data[approvedBy]}"
            ),
            "default": "Your request has been approved!",
        },
    },
    "request-rejected": {
        "title": "❌ Request Rejected",
        "variant_field": "type",
        "body": {
            "leave": (
                "Your {data[leaveType]} request was rejected\n"
                "{data[numberOfDays]} day(s) from {data[fromDate]:date}\n\n"
                "Rejected by: {data[rejectedBy]}"
            ),
            "permission": (
                "Your Permission request was rejected\n"
                "{data[permissionDate]:date} - {data[fromTime]:time} to {data[toTime]:time}\n\n"
                "Rejected by: {data[rejectedBy]}"
            ),
            "default": "Your request was rejected",
        },
    },
    "request-status-updated": {
        "title": "🔔 Request Updated",
        "variant_field": "action",
        "titles": {
            "approved": "✅ Request Approved!",
            "rejected": "❌ Request Rejected",
            "hold": "⏸️ Request On Hold",
        },
        "body": {
            "default": (
                "Your {event[type]} request has been {event[action]}\n\n"
                "Updated by: {event[updatedBy]}\n"
                "Remark: {event[remark]}"
            ),
        },
    },
    "missed-attendance-notification": {
        "title": "⏰ Missed Attendance Request",
        "body": {
            "default": (
                "{data[employee_name]} has requested missed attendance\n"
                "Date: {data[requestDate]:date}\n"
                "Type: {data[attendanceType]} {data[action]}\n"
                "Reason: {data[reason]}"
            ),
        },
    },
}

PUSH_FALLBACK_TEMPLATE = {
    "title": "🔔 Notification",
    "body": {"default": "{event[message]}"},
}

# 提醒事件: (domain, kind) -> {title, body}
REMINDER_TEMPLATES: dict[tuple[str, str], dict[str, str]] = {
    ("calendar", "UPCOMING"): {
        "title": "📅 Upcoming Event",
        "body": '"{payload[title]}" starts at {payload[startTime]:time}',
    },
    ("calendar", "DUE"): {
        "title": "🔔 Event Starting Now!",
        "body": '"{payload[title]}" is starting right now at {payload[startTime]:time}',
    },
    ("calendar", "MISSED"): {
        "title": "⚠️ Event Missed",
        "body": 'Did you Complete "{payload[title]}" at {payload[startTime]:time}?',
    },
    ("attendance", "UPCOMING"): {
        "title": "{payload[emoji]} {payload[label]} Reminder",
        "body": "{payload[label]} attendance opens at {scheduled:time}",
    },
    ("attendance", "DUE"): {
        "title": "{payload[emoji]} {payload[label]} Reminder",
        "body": (
            "{payload[emoji]} {payload[message]}\n\n"
            "Time: {scheduled:time}\n\n"
            "⚠️ Please mark your attendance now!"
        ),
    },
    ("attendance", "MISSED"): {
        "title": "⚠️ {payload[label]} Attendance Missed",
        "body": "{payload[label]} attendance was not marked by {payload[cutoff]:time}",
    },
    ("task", "DUE"): {
        "title": "📌 Task Ending Today",
        "body": "Task: {payload[taskName]}\nProject: {payload[projectName]}\nProgress: {payload[progress]}%",
    },
    ("task", "MISSED"): {
        "title": "⚠️ Task Overdue",
        "body": (
            "Task: {payload[taskName]}\nProject: {payload[projectName]}\n"
            "Overdue by {payload[daysOverdue]} day(s) (ended {payload[endDate]:date})"
        ),
    },
}

REMINDER_FALLBACK_TEMPLATE = {
    "title": "⏰ Reminder",
    "body": "{kind} at {scheduled:time}",
}

# 附加在批量提醒正文末尾的队列位置提示
BATCH_FOOTER = "\n\n📊 Notification {position} of {batch_size}"

__all__ = [
    "PUSH_TEMPLATES", "PUSH_FALLBACK_TEMPLATE",
    "REMINDER_TEMPLATES", "REMINDER_FALLBACK_TEMPLATE",
    "BATCH_FOOTER",
]
